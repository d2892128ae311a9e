"""Deployment orchestration for multi-account CI/CD bootstrap stacks."""

__version__ = "0.1.0"
