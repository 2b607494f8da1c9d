"""Chat-log anonymizer worker - watch, anonymize, deliver."""

__version__ = "1.0.0"
