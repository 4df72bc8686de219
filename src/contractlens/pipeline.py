"""
Analysis pipeline: Normalizer -> Flow Analyzer -> Hybrid Graph Builder ->
Dual-Channel Scorer -> Explainability Engine -> Report Synthesizer.

Runs are independent; each owns its unit, graphs and scoring state. The
model store is shared read-only.
"""

import logging
import threading
import time
import uuid
from types import MappingProxyType
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .analyzers.flow_analyzer import analyze_flows
from .config import Settings, settings as default_settings
from .explain.engine import ExplainabilityEngine
from .findings import Finding
from .frontend.normalizer import MAIN_PATH, ImportResolver, SourceNormalizer
from .graph.builder import build_hybrid_graph
from .models.store import ModelStore
from .reporting.report_generator import ReportGenerator, ReportViews
from .scoring.scorer import DualChannelScorer, Scorer
from .utils.error_handling import AnalysisTimeoutError, ContractLensError, error_to_dict, handle_exceptions
from .utils.logger import setup_logger

logger = logging.getLogger(__name__)


class Deadline:
    """Per-run wall-clock budget, checked at every suspension point."""

    def __init__(self, run_id: str, timeout: float):
        self.run_id = run_id
        self.timeout = timeout
        self._expires = time.monotonic() + timeout

    def remaining(self) -> float:
        return max(self._expires - time.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires

    def check(self, stage: Optional[str] = None) -> None:
        if self.expired:
            logger.warning(f"Run {self.run_id} timed out during {stage or 'analysis'}")
            raise AnalysisTimeoutError(self.run_id, self.timeout, stage)


class HistoryProvider(ABC):
    """Read-only source of prior Findings for a contract family."""

    @abstractmethod
    def get_prior_findings(self, contract_family_id: str) -> Sequence[Finding]:
        ...


@dataclass(frozen=True)
class Submission:
    run_id: str
    source_text: str
    version_hint: Optional[str] = None
    contract_family_id: Optional[str] = None
    path: str = MAIN_PATH


@dataclass(frozen=True)
class AnalysisResult:
    run_id: str
    unit_id: str
    findings: Tuple[Finding, ...]
    views: ReportViews
    coverage: str = 'full'
    diagnostics: Tuple[str, ...] = ()
    # Contract-level fused score per vulnerability kind
    graph_scores: Mapping[str, float] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.coverage != 'full' or bool(self.diagnostics)


@dataclass(frozen=True)
class AnalysisFailure:
    run_id: str
    error: Dict[str, Any] = field(default_factory=dict)


class AnalysisPipeline:
    """
    Entry point of the analysis core.

    ``submit(source_text, version_hint) -> run_id`` registers a run and
    ``run(run_id)`` executes it; ``analyze`` does both.
    """

    def __init__(
        self,
        store: Optional[ModelStore] = None,
        scorer: Optional[Scorer] = None,
        resolver: Optional[ImportResolver] = None,
        history: Optional[HistoryProvider] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        setup_logger('contractlens', self.config.log_level, self.config.log_file)
        self.scorer = scorer or DualChannelScorer(store, self.config)
        self.normalizer = SourceNormalizer(resolver, self.config)
        self.engine = ExplainabilityEngine(self.scorer, self.config)
        self.reporter = ReportGenerator(top_k=self.config.attribution_top_k)
        self.history = history
        self._pending: Dict[str, Submission] = {}
        self._lock = threading.Lock()

    def submit(self, source_text: str, version_hint: Optional[str] = None,
               contract_family_id: Optional[str] = None, path: str = MAIN_PATH) -> str:
        run_id = uuid.uuid4().hex
        with self._lock:
            self._pending[run_id] = Submission(run_id, source_text, version_hint, contract_family_id, path)
        logger.debug(f"Submitted run {run_id}")
        return run_id

    @handle_exceptions(default_return=())
    def _prior_findings(self, contract_family_id: Optional[str]) -> Sequence[Finding]:
        if self.history is None or contract_family_id is None:
            return ()
        return tuple(self.history.get_prior_findings(contract_family_id))

    def run(self, run_id: str) -> AnalysisResult:
        """
        Execute a submitted run.

        Raises:
            KeyError: if the run id was never submitted (or already ran)
            ContractLensError: a fatal error aborted the run; no partial result
        """
        with self._lock:
            submission = self._pending.pop(run_id, None)
        if submission is None:
            raise KeyError(f"Unknown run id: {run_id}")
        deadline = Deadline(run_id, self.config.run_timeout_seconds)
        started = time.monotonic()
        logger.info(f"Starting analysis run {run_id}")
        try:
            result = self._execute(submission, deadline)
        except ContractLensError as e:
            logger.error(f"Analysis run {run_id} failed: {e.message}")
            raise
        logger.info(f"Analysis run {run_id} finished in {time.monotonic() - started:.2f}s "
                    f"with {len(result.findings)} findings")
        return result

    def _execute(self, submission: Submission, deadline: Deadline) -> AnalysisResult:
        run_id = submission.run_id
        deadline.check('normalization')
        unit = self.normalizer.normalize(submission.source_text, submission.version_hint, submission.path)
        deadline.check('flow analysis')
        flows = analyze_flows(unit)
        deadline.check('graph construction')
        graph = build_hybrid_graph(unit, flows)
        prior = self._prior_findings(submission.contract_family_id)

        try:
            findings = self.scorer.score(graph, prior, run_id=run_id, deadline=deadline)
            explained = self.engine.explain_all(findings, run_id, deadline)
            state = self.scorer.embeddings(run_id)
            graph_scores = {kind: state.graph_score(kind) for kind in state.kinds}
        finally:
            if not self.config.retain_embeddings:
                self.scorer.release(run_id)
        deadline.check('report synthesis')
        views = self.reporter.synthesize(explained, graph_scores)
        return AnalysisResult(
            run_id=run_id,
            unit_id=unit.unit_id,
            findings=tuple(explained),
            views=views,
            coverage=graph.meta.get('coverage', 'full'),
            diagnostics=tuple(graph.meta.get('diagnostics', ())),
            graph_scores=MappingProxyType(graph_scores),
        )

    def analyze(self, source_text: str, version_hint: Optional[str] = None,
                contract_family_id: Optional[str] = None) -> AnalysisResult:
        return self.run(self.submit(source_text, version_hint, contract_family_id))

    def analyze_many(self, submissions: Iterable[Union[str, Tuple, Dict[str, Any]]]
                     ) -> List[Union[AnalysisResult, AnalysisFailure]]:
        """
        Run independent analyses in parallel.

        Args:
            submissions: Source texts, ``(source, version_hint[, family_id])``
                tuples, or dicts with ``source_text``/``version_hint``/
                ``contract_family_id`` keys

        Returns:
            One AnalysisResult or AnalysisFailure per submission, in order
        """
        run_ids = []
        for item in submissions:
            if isinstance(item, str):
                run_ids.append(self.submit(item))
            elif isinstance(item, dict):
                run_ids.append(self.submit(**item))
            else:
                run_ids.append(self.submit(*item))

        def guarded(run_id: str) -> Union[AnalysisResult, AnalysisFailure]:
            try:
                return self.run(run_id)
            except Exception as e:
                logger.error(f"Run {run_id} failed: {str(e)}")
                return AnalysisFailure(run_id, error_to_dict(e))

        with ThreadPoolExecutor(max_workers=self.config.max_parallel_runs, thread_name_prefix='run') as pool:
            return list(pool.map(guarded, run_ids))
