"""Control-plane API for remote cluster registrations and credentialed resources."""

__version__ = "0.1.0"
