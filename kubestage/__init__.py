"""
kubestage - idempotent, phase-by-phase provisioning of a kubeadm
Kubernetes cluster on AWS.

Phases record what they learn in a durable state file so any phase can be
re-run or resumed after a failure.
"""

__version__ = "0.1.0"


__all__ = ["KubestageConfig", "load_config", "get_kubestage_home"]

from .config import KubestageConfig, load_config, get_kubestage_home
