"""Utility modules for the reconciliation kernel."""

from recon_kernel.utils.hashing import (
    canonicalize_json,
    derive_id,
    hash_audit_entry,
    hash_payload,
)

__all__ = [
    "canonicalize_json",
    "derive_id",
    "hash_audit_entry",
    "hash_payload",
]
