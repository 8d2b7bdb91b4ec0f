"""expense-auth: identity, PIN credential and session-trust service for the expense tracker."""

__version__ = "1.0.0"
