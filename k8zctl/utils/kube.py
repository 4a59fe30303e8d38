import logging
import threading
from typing import Optional

import urllib3
import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..modules.provisioning.health import HealthGate

logger = logging.getLogger("k8zctl.utils.kube")


def api_client_from_bytes(kubeconfig: bytes) -> client.ApiClient:
    """Build an ApiClient from raw kubeconfig contents without touching global config."""
    return config.new_client_from_config_dict(yaml.safe_load(kubeconfig))


def wait_for_api(kubeconfig: bytes, timeout: float, interval: float = 5.0,
                 cancel: Optional[threading.Event] = None) -> str:
    """Block until the Kubernetes API answers a version request.

    Returns the server's git version.
    """
    api = client.VersionApi(api_client_from_bytes(kubeconfig))
    version = {}

    def probe() -> bool:
        try:
            version['git'] = api.get_code().git_version
            return True
        except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
            logger.debug(f"Kubernetes API not ready yet: {e}")
            return False

    HealthGate(cancel).wait(probe, timeout=timeout, interval=interval, description="Kubernetes API")
    logger.info(f"✅ Kubernetes API is up ({version['git']})")
    return version['git']
