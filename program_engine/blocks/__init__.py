"""
Blocks Package.

Exports the BlockService and the block config registry.
"""

from .block_service import BlockService
from .validators import BLOCK_CONFIG_MODELS, INTERNAL_BLOCK_TYPES, validate_block_config

__all__ = [
    "BLOCK_CONFIG_MODELS",
    "INTERNAL_BLOCK_TYPES",
    "BlockService",
    "validate_block_config",
]
