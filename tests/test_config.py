"""Tests for environment-driven settings."""

from contractlens.config import Settings


class TestSettings:
    def test_defaults(self):
        config = Settings()

        assert config.counterfactual_max_edits == 3
        assert config.semantic_backbone is None
        assert not config.retain_embeddings

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('CONTRACTLENS_CONTEXT_WINDOW', '4')
        monkeypatch.setenv('CONTRACTLENS_DIVERGENCE_BOUND', '0.25')
        monkeypatch.setenv('CONTRACTLENS_RETAIN_EMBEDDINGS', 'yes')
        monkeypatch.setenv('CONTRACTLENS_MODEL_DIR', '/models')

        config = Settings.from_env()

        assert config.context_window == 4
        assert config.divergence_bound == 0.25
        assert config.retain_embeddings is True
        assert config.model_dir == '/models'

    def test_invalid_values_are_ignored(self, monkeypatch):
        monkeypatch.setenv('CONTRACTLENS_MESSAGE_PASSING_ROUNDS', 'many')

        assert Settings.from_env().message_passing_rounds == Settings().message_passing_rounds

    def test_overrides_win(self, monkeypatch):
        monkeypatch.setenv('CONTRACTLENS_ATTRIBUTION_TOP_K', '9')

        config = Settings.from_env(attribution_top_k=2)

        assert config.attribution_top_k == 2
        assert config.with_overrides(run_timeout_seconds=5.0).run_timeout_seconds == 5.0
