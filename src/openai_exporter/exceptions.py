class ExporterError(Exception):
    """
    base exception for all errors raised by the exporter.
    """


class ConfigError(ExporterError):
    """
    raised at startup when required configuration is missing
    or invalid. The process does not serve metrics in that case.
    """


class UsageAPIError(ExporterError):
    """
    UsageAPIError covers transport failures (connection errors,
    timeouts) and non-2xx responses from the OpenAI API.
    """

    def __init__(self, message: "str", status_code: "int | None" = None) -> "None":
        super().__init__(message)
        self.status_code = status_code


class UsageDecodeError(UsageAPIError):
    """
    raised when a response body can't be decoded into the
    expected shape.
    """
