"""Exceptions raised by the anonymizer worker."""

from typing import Optional


class AnonymizerServiceError(Exception):
    """Base exception for worker errors."""
    pass


class PresidioError(AnonymizerServiceError):
    """Entity-detection service call failed."""
    pass


class AnalyzerError(PresidioError):
    """Analyzer returned a non-success HTTP status."""
    def __init__(self, status_code: int):
        super().__init__(f"Presidio Analyzer HTTP {status_code}")
        self.status_code = status_code


class AnonymizerError(PresidioError):
    """Anonymizer returned a non-success HTTP status."""
    def __init__(self, status_code: int):
        super().__init__(f"Presidio Anonymizer HTTP {status_code}")
        self.status_code = status_code


class PresidioConnectionError(PresidioError):
    """Entity-detection service timed out or could not be reached."""
    pass


class DeliveryError(AnonymizerServiceError):
    """Classified delivery failure. `safe_message` is fit for persistence."""
    def __init__(self, code: str, safe_message: str, status_code: Optional[int] = None):
        super().__init__(f"{code}: {safe_message}")
        self.code = code
        self.safe_message = safe_message
        self.status_code = status_code


class ControlPlaneError(AnonymizerServiceError):
    """Control-plane API call failed."""
    pass


class InvalidTransitionError(AnonymizerServiceError):
    """Illegal processing-run status transition."""
    def __init__(self, current, target):
        super().__init__(f"Cannot move run from {current.value} to {target.value}")
        self.current = current
        self.target = target
