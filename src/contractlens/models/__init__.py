"""
ContractLens Models Package

- Structural channel: relational message passing over the hybrid graph
- Semantic channel: n-gram context encoder, or a pretrained code model
- Cross-modal fusion and the read-only model/threshold store
"""

from .hybrid_model import CrossModalFusion
from .semantic import SemanticChannel, TransformerContextChannel
from .store import ModelStore, get_default_store
from .structural import StructuralChannel

__all__ = [
    'CrossModalFusion',
    'ModelStore',
    'SemanticChannel',
    'StructuralChannel',
    'TransformerContextChannel',
    'get_default_store',
]
