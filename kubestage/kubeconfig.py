"""
Kubeconfig handling for the workstation copy of admin.conf.

The control plane's certificate is issued for its private address, so the
copy used from outside the VPC points at the public IP and skips TLS
verification.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from kubestage.errors import RemoteCommandFailed

logger = logging.getLogger(__name__)


def api_endpoint(public_ip: str, port: int = 6443) -> str:
    return f"https://{public_ip}:{port}"


def rewrite(text: str, server: str) -> str:
    """Point every cluster entry at ``server`` and disable TLS verification."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise RemoteCommandFailed("parse kubeconfig", {"local": str(e)})
    if not isinstance(data, dict) or not data.get("clusters"):
        raise RemoteCommandFailed("parse kubeconfig", {"local": "no clusters defined"})

    for entry in data["clusters"]:
        cluster = entry.setdefault("cluster", {})
        cluster["server"] = server
        cluster.pop("certificate-authority-data", None)
        cluster.pop("certificate-authority", None)
        cluster["insecure-skip-tls-verify"] = True
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def server_of(path: Path) -> Optional[str]:
    """Server URL of the first cluster, or None if the file is missing."""
    path = Path(path).expanduser()
    if not path.exists():
        return None
    data = yaml.safe_load(path.read_text()) or {}
    clusters = data.get("clusters") or []
    if not clusters:
        return None
    return clusters[0].get("cluster", {}).get("server")


def write(path: Path, text: str) -> Path:
    """Write a kubeconfig readable only by the current user."""
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    os.chmod(path, 0o600)
    logger.info(f"Wrote kubeconfig {path}")
    return path


def update_server(path: Path, server: str) -> bool:
    """Re-point an existing kubeconfig. Returns False if there is none."""
    path = Path(path).expanduser()
    if not path.exists():
        return False
    write(path, rewrite(path.read_text(), server))
    return True
