"""mockgen - AI mockup generation backend (job pipeline, resilience, billing webhooks)."""

__version__ = "0.1.0"
