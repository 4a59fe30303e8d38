"""k8zctl - provision and upgrade Talos Kubernetes clusters on Hetzner Cloud."""

__version__ = "0.1.0"
