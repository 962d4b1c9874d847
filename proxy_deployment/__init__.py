"""Deployment and upgrade orchestration for contracts behind transparent proxies."""

__version__ = "0.1.0"
