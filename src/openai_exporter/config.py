import os
from dataclasses import dataclass

from openai_exporter.exceptions import ConfigError


@dataclass
class Config:
    # listen_address: format ":9185" or
    # "0.0.0.0:9185"
    listen_address: "str" = ":9185"
    # usage collection interval in seconds
    scrape_interval: "int" = 60
    # how far back each usage query reaches, in seconds
    query_offset: "int" = 900
    # cost collection interval in seconds
    cost_interval: "int" = 3600
    # publish deltas for buckets that are still accumulating
    track_open_buckets: "bool" = True
    log_level: "str" = "info"
    log_format: "str" = "console"

    api_key: "str" = ""
    org_id: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            api_key=os.environ.get("OPENAI_SECRET_KEY", ""),
            org_id=os.environ.get("OPENAI_ORG_ID", ""),
        )

    def validate(self) -> "None":
        """
        raises ConfigError for configuration the exporter can't run with.
        """
        if not self.api_key:
            raise ConfigError("OPENAI_SECRET_KEY environment variable is required")
        if not self.org_id:
            raise ConfigError("OPENAI_ORG_ID environment variable is required")
        for name in ("scrape_interval", "query_offset", "cost_interval"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
