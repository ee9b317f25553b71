"""Identity mapping services."""

from .resolver import IdentityResolver, normalize_identity

__all__ = ["IdentityResolver", "normalize_identity"]
