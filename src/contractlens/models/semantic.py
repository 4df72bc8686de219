import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import torch
import torch.nn as nn
import pytorch_lightning as pl
from transformers import AutoModel, AutoTokenizer

from ..frontend.normalizer import version_tuple
from ..graph.hybrid_graph import HybridGraph, HybridNode

logger = logging.getLogger(__name__)

BAGS = ('own', 'before', 'after', 'preamble')

CUES = (
    'assign', 'external_call', 'low_level_call', 'value_transfer', 'nonreentrant', 'arithmetic',
    'legacy', 'unchecked', 'guard', 'tx_origin', 'compare', 'timestamp', 'sensitive', 'public',
    'only', 'auth',
)
CUE_INDEX = {cue: index for index, cue in enumerate(CUES)}

# n-gram -> cues it signals
REFERENCE_VOCABULARY: Dict[str, Tuple[str, ...]] = {
    '.call': ('external_call', 'low_level_call'),
    '.delegatecall': ('external_call', 'low_level_call', 'sensitive'),
    '.staticcall': ('low_level_call',),
    '.send': ('low_level_call', 'value_transfer'),
    '.transfer': ('value_transfer',),
    '=': ('assign',),
    '|=': ('assign',),
    '&=': ('assign',),
    '^=': ('assign',),
    '<<=': ('assign',),
    '>>=': ('assign',),
    '+=': ('assign', 'arithmetic'),
    '-=': ('assign', 'arithmetic'),
    '*=': ('assign', 'arithmetic'),
    '/=': ('assign', 'arithmetic'),
    '%=': ('assign', 'arithmetic'),
    '++': ('assign', 'arithmetic'),
    '--': ('assign', 'arithmetic'),
    'delete': ('assign',),
    '+': ('arithmetic',),
    '-': ('arithmetic',),
    '*': ('arithmetic',),
    '/': ('arithmetic',),
    '%': ('arithmetic',),
    '**': ('arithmetic',),
    'nonReentrant': ('nonreentrant',),
    'noReentrant': ('nonreentrant',),
    'noReentrancy': ('nonreentrant',),
    'nonreentrant': ('nonreentrant',),
    '<legacy-version>': ('legacy',),
    'unchecked': ('unchecked',),
    'require': ('guard',),
    'assert': ('guard',),
    'if': ('guard',),
    'while': ('guard',),
    '?': ('guard',),
    'tx .origin': ('tx_origin',),
    '==': ('compare',),
    '!=': ('compare',),
    'block .timestamp': ('timestamp',),
    'now': ('timestamp',),
    'selfdestruct': ('sensitive',),
    'suicide': ('sensitive',),
    'owner =': ('sensitive',),
    '_owner =': ('sensitive',),
    'admin =': ('sensitive',),
    'public': ('public',),
    'external': ('public',),
    'only*': ('only',),
    'msg .sender ==': ('auth',),
    '== msg .sender': ('auth',),
    'msg .sender !=': ('auth',),
    '!= msg .sender': ('auth',),
}

# Reference evidence patterns: {(bag, cue): weight}, bias
REFERENCE_PATTERNS: Dict[str, Tuple[Dict[Tuple[str, str], float], float]] = {
    'Reentrancy': ({
        ('own', 'assign'): 1.0,
        ('before', 'external_call'): 1.0,
        ('own', 'external_call'): -1.0,
        ('before', 'nonreentrant'): -2.0,
    }, -1.0),
    'AccessControl': ({
        ('own', 'sensitive'): 1.0,
        ('before', 'public'): 1.0,
        ('before', 'only'): -2.0,
        ('before', 'auth'): -2.0,
    }, -1.0),
    'TxOriginAuthentication': ({
        ('own', 'tx_origin'): 1.0,
        ('own', 'compare'): 1.0,
    }, -1.0),
    'IntegerOverflow': ({
        ('own', 'arithmetic'): 1.0,
        ('preamble', 'legacy'): 1.0,
        ('before', 'unchecked'): 1.0,
    }, -1.0),
    'UncheckedLowLevelCall': ({
        ('own', 'low_level_call'): 1.0,
        ('own', 'assign'): -1.0,
        ('own', 'guard'): -1.0,
    }, 0.0),
    'TimestampDependence': ({
        ('own', 'timestamp'): 1.0,
        ('own', 'guard'): 1.0,
    }, -1.0),
}

_TOKEN = re.compile(
    r'\s*(?:'
    r'(?P<version>\d+\.\d+(?:\.\d+)?)'
    r'|(?P<number>0[xX][0-9a-fA-F]+|\d[\d_]*(?:[eE]\d+)?)'
    r'|(?P<string>"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\')'
    r'|(?P<member>\.\s*[A-Za-z_$][\w$]*)'
    r'|(?P<ident>[A-Za-z_$][\w$]*)'
    r'|(?P<op>>>>=|<<=|>>=|\*\*|==|!=|<=|>=|&&|\|\||\+\+|--|\+=|-=|\*=|/=|%=|\|=|&=|\^=|=>|[-+*/%<>=!~&|^?:;,.(){}\[\]])'
    r')'
)


class CodeTokenizer:
    """Splits source spans into normalized code tokens and n-grams."""

    def __init__(self, max_ngram: int = 3):
        self.max_ngram = max_ngram

    def tokenize(self, text: str) -> List[str]:
        tokens = []
        pos = 0
        text = re.sub(r'//[^\n]*|/\*.*?\*/', ' ', text, flags=re.S)
        while pos < len(text):
            match = _TOKEN.match(text, pos)
            if match is None or match.end() == pos:
                pos += 1
                continue
            pos = match.end()
            kind = match.lastgroup
            value = match.group(kind)
            if kind == 'version':
                major, minor, _ = version_tuple(value)
                tokens.append('<legacy-version>' if major == 0 and 4 <= minor < 8 else '<version>')
            elif kind == 'number':
                tokens.append('<num>')
            elif kind == 'string':
                tokens.append('<str>')
            elif kind == 'member':
                tokens.append('.' + value[1:].strip())
            elif kind == 'ident' and re.match(r'^only[A-Z_]', value):
                tokens.append('only*')
            else:
                tokens.append(value)
        return tokens

    def ngrams(self, tokens: Sequence[str]) -> List[str]:
        grams = []
        for n in range(1, self.max_ngram + 1):
            for i in range(len(tokens) - n + 1):
                grams.append(' '.join(tokens[i:i + n]))
        return grams


@dataclass
class ContextItem:
    node_id: Optional[int]
    position: Tuple[int, int, int]
    text: str


def linearize(graph: HybridGraph) -> Dict[int, Tuple[List[ContextItem], int]]:
    """
    Per-function linearization: the function header, then its statements and
    call sites by source position. Returns, per node id, the item sequence it
    belongs to and its index in it.
    """
    sequences: Dict[Optional[int], List[ContextItem]] = {}
    for node in graph.ordered_nodes():
        if node.function is None and node.kind != 'function':
            sequences.setdefault(None, []).append(ContextItem(node.id, node.position, node.text))
    for function in graph.functions():
        items = [ContextItem(function.id, function.position, function.text)]
        items += [ContextItem(n.id, n.position, n.text) for n in graph.nodes_in_function(function.id)]
        sequences[function.id] = items
        for offset in function.attrs.get('unchecked_blocks', ()):
            items.append(ContextItem(None, (function.position[0], offset, -2), 'unchecked'))
        # Header first, then everything else by position
        items.sort(key=lambda item: (item.node_id != function.id, item.position))
    placement: Dict[int, Tuple[List[ContextItem], int]] = {}
    for items in sequences.values():
        for index, item in enumerate(items):
            if item.node_id is not None:
                placement[item.node_id] = (items, index)
    return placement


@dataclass
class SemanticOutput:
    embedding: torch.Tensor    # [N, len(BAGS) * C]
    evidence: torch.Tensor     # [N, P]


class SemanticChannel(pl.LightningModule):
    """
    Context channel: each node is read as its own source span plus a
    preceding and following window of linearized items and the unit
    preamble. N-gram bags are max-pooled into cue embeddings and projected
    into the per-kind evidence space. Graph topology is not used.
    """

    def __init__(self, kinds: Sequence[str], vocabulary: Optional[Sequence[str]] = None,
                 num_cues: int = len(CUES), context_window: int = 6, max_ngram: int = 3):
        super().__init__()
        self.save_hyperparameters()
        self.kinds = tuple(kinds)
        self.vocabulary = tuple(vocabulary if vocabulary is not None else REFERENCE_VOCABULARY)
        self.token_ids = {gram: index + 1 for index, gram in enumerate(self.vocabulary)}
        self.num_cues = num_cues
        self.context_window = context_window
        self.tokenizer = CodeTokenizer(max_ngram)
        # Row 0 is never looked up; unknown n-grams are dropped from the bags
        self.embedding = nn.EmbeddingBag(len(self.vocabulary) + 1, num_cues, mode='max')
        self.projection = nn.Linear(num_cues * len(BAGS), len(self.kinds))

    def contexts(self, graph: HybridGraph) -> List[Dict[str, str]]:
        """Own span, before/after windows and preamble text for every node."""
        placement = linearize(graph)
        preamble = graph.meta.get('preamble', '')
        window = self.context_window
        contexts = []
        for node in graph.nodes:
            items, index = placement[node.id]
            before = items[max(0, index - window):index]
            after = items[index + 1:index + 1 + window]
            contexts.append({
                'own': node.text,
                'before': '\n'.join(item.text for item in before),
                'after': '\n'.join(item.text for item in after),
                'preamble': preamble,
            })
        return contexts

    def _bag(self, text: str) -> List[int]:
        grams = self.tokenizer.ngrams(self.tokenizer.tokenize(text))
        return sorted({self.token_ids[g] for g in grams if g in self.token_ids})

    def encode(self, texts: Iterable[str]) -> torch.Tensor:
        bags = [self._bag(text) for text in texts]
        flat = [token for bag in bags for token in bag]
        offsets, total = [], 0
        for bag in bags:
            offsets.append(total)
            total += len(bag)
        inputs = torch.tensor(flat, dtype=torch.long)
        return self.embedding(inputs, torch.tensor(offsets, dtype=torch.long))

    def forward(self, contexts: Sequence[Dict[str, str]]) -> SemanticOutput:
        encoded = [self.encode(ctx[bag] for ctx in contexts) for bag in BAGS]
        embedding = torch.cat(encoded, dim=1)
        evidence = self.projection(embedding).clamp(0.0, 1.0)
        return SemanticOutput(embedding, evidence)

    def score_graph(self, graph: HybridGraph) -> SemanticOutput:
        return self(self.contexts(graph))

    @torch.no_grad()
    def load_reference_weights(self) -> 'SemanticChannel':
        """Install the interpretable reference calibration."""
        table = torch.zeros_like(self.embedding.weight)
        for gram, index in self.token_ids.items():
            for cue in REFERENCE_VOCABULARY.get(gram, ()):
                table[index, CUE_INDEX[cue]] = 1.0
        weight = torch.zeros_like(self.projection.weight)
        bias = torch.zeros_like(self.projection.bias)
        for k, kind in enumerate(self.kinds):
            terms, offset = REFERENCE_PATTERNS.get(kind, ({}, -1.0))
            for (bag, cue), value in terms.items():
                weight[k, BAGS.index(bag) * self.num_cues + CUE_INDEX[cue]] = value
            bias[k] = offset
        self.embedding.weight.copy_(table)
        self.projection.weight.copy_(weight)
        self.projection.bias.copy_(bias)
        logger.debug(f"Loaded reference semantic weights for {len(self.kinds)} kinds")
        return self


class TransformerContextChannel(pl.LightningModule):
    """
    Semantic channel backed by a pretrained code model (e.g. CodeBERT). Each
    context text is embedded by mean-pooling the last hidden state; the four
    embeddings are concatenated and projected into the evidence space.
    """

    def __init__(self, kinds: Sequence[str], model_name: str = 'microsoft/codebert-base',
                 context_window: int = 6, max_length: int = 256):
        super().__init__()
        self.save_hyperparameters()
        self.kinds = tuple(kinds)
        self.context_window = context_window
        self.max_length = max_length
        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)
            self.backbone = AutoModel.from_pretrained(model_name)
            logger.info(f"Successfully loaded {model_name} backbone")
        except Exception as e:
            logger.error(f"Failed to load {model_name} backbone: {str(e)}")
            raise
        hidden = self.backbone.config.hidden_size
        self.projection = nn.Linear(hidden * len(BAGS), len(self.kinds))

    # Shares the context construction of the lexical channel
    contexts = SemanticChannel.contexts

    def encode(self, texts: Sequence[str]) -> torch.Tensor:
        batch = self.tokenizer(list(texts), padding=True, truncation=True,
                               max_length=self.max_length, return_tensors='pt')
        with torch.no_grad():
            outputs = self.backbone(**batch)
        mask = batch['attention_mask'].unsqueeze(-1).float()
        return (outputs.last_hidden_state * mask).sum(dim=1) / mask.sum(dim=1).clamp(min=1.0)

    def forward(self, contexts: Sequence[Dict[str, str]]) -> SemanticOutput:
        encoded = [self.encode([ctx[bag] or ' ' for ctx in contexts]) for bag in BAGS]
        embedding = torch.cat(encoded, dim=1)
        evidence = torch.sigmoid(self.projection(embedding))
        return SemanticOutput(embedding, evidence)

    def score_graph(self, graph: HybridGraph) -> SemanticOutput:
        return self(self.contexts(graph))
