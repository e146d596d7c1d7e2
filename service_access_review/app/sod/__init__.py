"""
Segregation-of-Duties: policy models, the pure conflict engine, and
policy storage.
"""

from .engine import PolicySnapshot, evaluate, normalize, normalize_pair, normalized_held
from .models import PolicyViolation, Severity, SodPolicy, SodPolicyImportRow
from .policies import SodPolicyImporter, load_policies, load_snapshot

__all__ = [
    "PolicySnapshot",
    "PolicyViolation",
    "Severity",
    "SodPolicy",
    "SodPolicyImportRow",
    "SodPolicyImporter",
    "evaluate",
    "load_policies",
    "load_snapshot",
    "normalize",
    "normalize_pair",
    "normalized_held",
]
