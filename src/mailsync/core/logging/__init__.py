from .setup import CorrelationIdFilter, SecretRedactionFilter, configure_logging, get_logger, redact

__all__ = ["CorrelationIdFilter", "SecretRedactionFilter", "configure_logging", "get_logger", "redact"]
