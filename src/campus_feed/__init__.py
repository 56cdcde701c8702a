"""Campus Feed: a college-scoped social feed client with realtime reconciliation."""

__version__ = "0.1.0"
