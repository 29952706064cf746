"""Keywarden: zero-downtime rotation and emergency revocation of ES256 signing keys."""

from .bootstrap import bootstrap_service
from .config import KeywardenConfig, load_config
from .jwks import JWKSPublisher
from .keys import KeyGenerator, KeyPair
from .manager import KeyLifecycleManager
from .models import JWKSDocument, PublicKeyRecord, SigningSecret
from .monitor import ConsistencyMonitor
from .revocation import RevocationOrchestrator
from .rotation import RotationOrchestrator
from .store import get_key_store, get_registry
from .trace import RunReport, Verdict

__version__ = "0.1.0"
__all__ = [
    "bootstrap_service",
    "ConsistencyMonitor",
    "JWKSDocument",
    "JWKSPublisher",
    "KeyGenerator",
    "KeyLifecycleManager",
    "KeyPair",
    "KeywardenConfig",
    "PublicKeyRecord",
    "RevocationOrchestrator",
    "RotationOrchestrator",
    "RunReport",
    "SigningSecret",
    "Verdict",
    "get_key_store",
    "get_registry",
    "load_config",
]
