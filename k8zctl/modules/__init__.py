"""
Cluster provisioning modules and their cloud/OS backends.
"""
from .hcloud import HCloudClient
from .talos import TalosctlClient

__all__ = [
    'HCloudClient',
    'TalosctlClient',
]
