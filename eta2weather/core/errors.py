"""Error taxonomy shared by drivers, storage and the orchestrator."""


class Eta2WeatherError(Exception):
    """Base exception for eta2weather."""

    pass


class NetworkError(Eta2WeatherError):
    """Remote device unreachable or answered with a non-2xx status."""

    pass


class ParseError(Eta2WeatherError):
    """Malformed markup, XML or JSON received from a device."""

    pass


class ConfigError(Eta2WeatherError):
    """Configuration file is missing, empty or corrupt."""

    pass


class StoreError(Eta2WeatherError):
    """Partition file unavailable or query failure."""

    pass


class Cancelled(Eta2WeatherError):
    """Cooperative cancellation. Not a failure: never retried, never logged as error."""

    pass
