"""Command implementations for the k8zctl CLI."""
