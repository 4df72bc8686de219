"""
Read-only model and threshold provider.

The store is loaded once per process and shared by concurrent runs; nothing
in a run mutates it. Channels come either from Lightning checkpoints in
``model_dir`` (``structural.ckpt``, ``semantic.ckpt``, ``fusion.ckpt``) or
from the reference calibration built from the vulnerability catalogue.
"""

import json
import logging
import os
import threading
from types import MappingProxyType
from typing import Dict, Mapping, Optional

import pytorch_lightning as pl

from ..config import Settings, settings as default_settings
from ..findings import catalogue
from ..utils.error_handling import ModelError
from .hybrid_model import CrossModalFusion
from .semantic import SemanticChannel, TransformerContextChannel
from .structural import StructuralChannel

logger = logging.getLogger(__name__)

CHANNEL_CLASSES = {
    'structural': StructuralChannel,
    'semantic': SemanticChannel,
    'fusion': CrossModalFusion,
}


class ModelStore:
    """Provides ``get_model(channel_name)`` and ``get_threshold(kind)``."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.kinds = tuple(catalogue())
        self._models: Dict[str, pl.LightningModule] = {}
        for channel in CHANNEL_CLASSES:
            model = self._load(channel)
            model.eval()
            model.freeze()
            if tuple(model.kinds) != self.kinds:
                raise ModelError(f"The {channel} channel scores kinds {list(model.kinds)}, "
                                 f"expected {list(self.kinds)}", details={'channel': channel})
            self._models[channel] = model
        self._thresholds = MappingProxyType(self._load_thresholds())
        logger.info(f"Model store ready with {len(self.kinds)} vulnerability kinds")

    def _checkpoint(self, channel: str) -> Optional[str]:
        if not self.config.model_dir:
            return None
        path = os.path.join(self.config.model_dir, f"{channel}.ckpt")
        return path if os.path.exists(path) else None

    def _load(self, channel: str) -> pl.LightningModule:
        checkpoint = self._checkpoint(channel)
        cls = CHANNEL_CLASSES[channel]
        if channel == 'semantic' and self.config.semantic_backbone:
            cls = TransformerContextChannel
        if checkpoint:
            try:
                model = cls.load_from_checkpoint(checkpoint, map_location='cpu')
                logger.info(f"Loaded {channel} channel from {checkpoint}")
                return model
            except Exception as e:
                logger.error(f"Failed to load {channel} checkpoint {checkpoint}: {str(e)}")
                raise ModelError(f"Cannot load {channel} channel from {checkpoint}",
                                 details={'channel': channel, 'path': checkpoint}) from e

        if channel == 'structural':
            return StructuralChannel(self.kinds, rounds=self.config.message_passing_rounds).load_reference_weights()
        if channel == 'semantic':
            if self.config.semantic_backbone:
                logger.warning(f"No semantic checkpoint for backbone {self.config.semantic_backbone}; "
                               "its evidence projection is uncalibrated")
                return TransformerContextChannel(self.kinds, model_name=self.config.semantic_backbone,
                                                 context_window=self.config.context_window)
            return SemanticChannel(self.kinds, context_window=self.config.context_window).load_reference_weights()
        return CrossModalFusion(self.kinds).load_reference_weights()

    def _load_thresholds(self) -> Dict[str, float]:
        thresholds = {name: entry.threshold for name, entry in catalogue().items()}
        path = self.config.thresholds_file
        if path:
            try:
                with open(path, 'r') as f:
                    overrides = json.load(f)
            except (OSError, ValueError) as e:
                raise ModelError(f"Cannot read threshold table {path}: {str(e)}",
                                 details={'path': path}) from e
            for kind, value in overrides.items():
                value = float(value)
                if not 0.0 < value < 1.0:
                    raise ModelError(f"Threshold for {kind} must lie in (0, 1), got {value}")
                thresholds[kind] = value
            logger.info(f"Loaded {len(overrides)} threshold overrides from {path}")
        return thresholds

    def get_model(self, channel_name: str) -> pl.LightningModule:
        try:
            return self._models[channel_name]
        except KeyError:
            raise ModelError(f"Unknown model channel: {channel_name}",
                             details={'channel': channel_name}) from None

    def get_threshold(self, vulnerability_kind: str) -> float:
        try:
            return self._thresholds[vulnerability_kind]
        except KeyError:
            raise ModelError(f"No threshold for vulnerability kind: {vulnerability_kind}",
                             details={'kind': vulnerability_kind}) from None

    @property
    def thresholds(self) -> Mapping[str, float]:
        return self._thresholds


_default_store: Optional[ModelStore] = None
_store_lock = threading.Lock()


def get_default_store() -> ModelStore:
    """Process-wide store, created on first use."""
    global _default_store
    with _store_lock:
        if _default_store is None:
            _default_store = ModelStore()
        return _default_store
