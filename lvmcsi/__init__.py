"""LVM-backed volume provisioning: controller, node and identity services, and reconcilers."""

__version__ = "0.1.0"