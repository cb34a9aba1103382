"""Distributed admission control (rate limiting) service."""
