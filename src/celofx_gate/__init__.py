"""Request authentication, replay protection and rate limiting for agent APIs."""

__version__ = "0.1.0"
