"""Tests for the model store and the channel models."""

import json
import os
import tempfile
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import pytorch_lightning as pl
import torch

from contractlens.config import Settings
from contractlens.findings import catalogue
from contractlens.models.hybrid_model import CrossModalFusion
from contractlens.models.semantic import CodeTokenizer, SemanticChannel, TransformerContextChannel
from contractlens.models.store import ModelStore
from contractlens.models.structural import StructuralChannel, aggregate_relation
from contractlens.utils.error_handling import ModelError

from conftest import node_on_line


class TestModelStore:
    def test_reference_channels(self, store):
        assert isinstance(store.get_model('structural'), StructuralChannel)
        assert isinstance(store.get_model('semantic'), SemanticChannel)
        assert isinstance(store.get_model('fusion'), CrossModalFusion)
        assert store.kinds == tuple(catalogue())

    def test_models_are_frozen(self, store):
        for channel in ('structural', 'semantic', 'fusion'):
            model = store.get_model(channel)
            assert not model.training
            assert all(not p.requires_grad for p in model.parameters())

    def test_catalogue_thresholds(self, store):
        assert store.get_threshold('Reentrancy') == 0.85
        assert store.get_threshold('TimestampDependence') == 0.75
        assert set(store.thresholds) == set(catalogue())

    def test_unknown_channel_and_kind(self, store):
        with pytest.raises(ModelError):
            store.get_model('visual')
        with pytest.raises(ModelError):
            store.get_threshold('Phishing')

    def test_threshold_overrides(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'thresholds.json')
            with open(path, 'w') as f:
                json.dump({'Reentrancy': 0.9}, f)

            store = ModelStore(Settings(thresholds_file=path))

        assert store.get_threshold('Reentrancy') == 0.9
        assert store.get_threshold('AccessControl') == 0.8

    def test_threshold_out_of_range(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'thresholds.json')
            with open(path, 'w') as f:
                json.dump({'Reentrancy': 1.5}, f)

            with pytest.raises(ModelError):
                ModelStore(Settings(thresholds_file=path))

    def test_missing_threshold_file(self):
        with pytest.raises(ModelError):
            ModelStore(Settings(thresholds_file='/nonexistent/thresholds.json'))

    def test_checkpoints_round_trip(self, store):
        with tempfile.TemporaryDirectory() as tmp:
            for channel in ('structural', 'semantic', 'fusion'):
                model = store.get_model(channel)
                torch.save({
                    'state_dict': model.state_dict(),
                    'hyper_parameters': dict(model.hparams),
                    'pytorch-lightning_version': pl.__version__,
                }, os.path.join(tmp, f'{channel}.ckpt'))

            loaded = ModelStore(Settings(model_dir=tmp))

        for channel in ('structural', 'semantic', 'fusion'):
            original = store.get_model(channel).state_dict()
            restored = loaded.get_model(channel).state_dict()
            assert all(torch.equal(original[key], restored[key]) for key in original)

    def test_corrupt_checkpoint(self):
        with tempfile.TemporaryDirectory() as tmp:
            with open(os.path.join(tmp, 'fusion.ckpt'), 'wb') as f:
                f.write(b'not a checkpoint')

            with pytest.raises(ModelError):
                ModelStore(Settings(model_dir=tmp))


class TestChannels:
    def test_tokenizer_normalizes_code(self):
        tokens = CodeTokenizer().tokenize('pragma solidity ^0.4.24; // note\nrequire(tx.origin == owner, "x");')

        assert '<legacy-version>' in tokens
        assert 'note' not in tokens
        assert '.origin' in tokens
        assert '<str>' in tokens
        assert CodeTokenizer().tokenize('modifier onlyOwner()')[1] == 'only*'

    def test_ngrams(self):
        grams = CodeTokenizer(max_ngram=2).ngrams(['tx', '.origin', '=='])

        assert grams == ['tx', '.origin', '==', 'tx .origin', '.origin ==']

    def test_semantic_contexts(self, store, bank_graph):
        channel = store.get_model('semantic')
        write = node_on_line(bank_graph, 10)

        context = channel.contexts(bank_graph)[write.id]

        assert 'msg.sender.call' in context['before']
        assert context['preamble'] == 'pragma solidity ^0.8.0;'
        assert context['own'] == 'balances[msg.sender] -= amount;'

    def test_aggregation_tracks_provenance(self):
        x = torch.tensor([[1.0, 0.0], [0.0, 0.0], [0.0, 1.0]])
        # 0 -> 1 -> 2
        edges = torch.tensor([[0, 1], [1, 2]])

        values, provenance = aggregate_relation(x, edges, rounds=3)

        assert values.tolist() == [[0.0, 0.0], [1.0, 0.0], [1.0, 0.0]]
        assert provenance[2, 0].item() == 0
        assert provenance[0, 0].item() == -1

    def test_fusion_prefers_agreeing_channels(self, store):
        fusion = store.get_model('fusion')
        kinds = len(fusion.kinds)
        both = torch.zeros(1, kinds)
        both[0, 0] = 1.0
        none = torch.zeros(1, kinds)

        agreeing = fusion(both, both).scores[0, 0].item()
        structural_only = fusion(both, none).scores[0, 0].item()
        semantic_only = fusion(none, both).scores[0, 0].item()

        assert agreeing > structural_only > semantic_only
        assert agreeing == pytest.approx(0.982, abs=1e-3)

    def test_mismatched_kinds(self):
        kinds = tuple(catalogue())
        models = {
            'structural': StructuralChannel(('Reentrancy',)),
            'semantic': SemanticChannel(kinds),
            'fusion': CrossModalFusion(kinds),
        }

        with patch.object(ModelStore, '_load', side_effect=lambda channel: models[channel]):
            with pytest.raises(ModelError) as excinfo:
                ModelStore()

        assert excinfo.value.details['channel'] == 'structural'


def _fake_tokenizer(texts, **kwargs):
    size = len(texts)
    return {'input_ids': torch.ones(size, 4, dtype=torch.long),
            'attention_mask': torch.ones(size, 4, dtype=torch.long)}


class TestTransformerChannel:
    @pytest.fixture
    def backbone(self):
        model = MagicMock()
        model.config.hidden_size = 8
        model.side_effect = lambda input_ids, attention_mask: SimpleNamespace(
            last_hidden_state=torch.ones(input_ids.shape[0], input_ids.shape[1], 8))
        return model

    def test_scores_graph_with_pretrained_backbone(self, backbone, bank_graph):
        with patch('transformers.AutoTokenizer.from_pretrained', return_value=_fake_tokenizer), \
             patch('transformers.AutoModel.from_pretrained', return_value=backbone):
            channel = TransformerContextChannel(tuple(catalogue()), model_name='fake/model')

        output = channel.score_graph(bank_graph)

        assert output.embedding.shape == (len(bank_graph), 8 * 4)
        assert output.evidence.shape == (len(bank_graph), len(catalogue()))
        assert bool(((output.evidence > 0) & (output.evidence < 1)).all())

    def test_store_uses_backbone(self, backbone):
        with patch('transformers.AutoTokenizer.from_pretrained', return_value=_fake_tokenizer), \
             patch('transformers.AutoModel.from_pretrained', return_value=backbone):
            store = ModelStore(Settings(semantic_backbone='fake/model'))

        assert isinstance(store.get_model('semantic'), TransformerContextChannel)

    def test_backbone_load_failure(self):
        with patch('transformers.AutoTokenizer.from_pretrained', side_effect=OSError('offline')):
            with pytest.raises(OSError):
                TransformerContextChannel(tuple(catalogue()), model_name='fake/model')
