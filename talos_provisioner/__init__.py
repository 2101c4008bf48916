"""Provision Talos Linux Kubernetes clusters on Hetzner Cloud."""

__version__ = "0.1.0"
