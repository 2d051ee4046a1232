"""
Cache keys: content hashes of canonical model specifications.

Two specs that mean the same thing (same canonical formula text, same data
fingerprint, family, resolved priors in canonical order and sampler settings)
hash to the same key. The seed is part of the sampler settings, so changing
it changes the key.
"""

import hashlib
import json

from bayesfit.spec.builder import ModelSpec


def cache_key(spec: ModelSpec) -> str:
    """64-character hex SHA-256 of the ModelSpec's canonical representation."""
    payload = json.dumps(spec.canonical(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


def short_key(key: str) -> str:
    """Abbreviated key for log messages."""
    return key[:12]
