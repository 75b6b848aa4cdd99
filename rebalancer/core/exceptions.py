class AppError(Exception):
    """Base class for all application errors."""
    pass

class ConfigurationError(AppError):
    """Configuration problem (missing credentials, invalid portfolio document)."""
    pass

class DataSourceError(AppError):
    """Exchange side failure (Bybit REST/stream unreachable or returned an error)."""
    pass

class DataDestinationError(AppError):
    """Journal sink failure (e.g. Notion API error)."""
    pass

class OrderSubmissionError(AppError):
    """The exchange refused an order at submission time."""
    pass

class RebalanceError(AppError):
    """A rebalance pass produced no successful trade at all."""
    pass
