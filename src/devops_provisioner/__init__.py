"""Resumable provisioning of cloud DevOps resources for local source folders."""

__version__ = "0.1.0"
