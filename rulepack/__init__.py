# =============================================================================
# Rulepack - Source Package
# =============================================================================
# This package contains all modules for the question -> context pipeline:
#   - config.py        : Configuration loading, merging and pack overrides
#   - errors.py        : EngineError and the closed set of error kinds
#   - reader.py        : File reading scoped to the pack root
#   - store.py         : Read-only rules/cards tables behind a storage port
#   - router_config.py : Parse router_map.json and the provider spec
#   - loader.py        : Load and validate a pack into a DataState
#   - analyzer.py      : Normalize questions and resolve one entity
#   - router.py        : Pick rule sections, hard includes and concept defaults
#   - scoring.py       : Score rules by token overlap and categorize them
#   - assembler.py     : Greedy token-budget packing into a ContextBundle
#   - prompt.py        : Render and trim the chat prompt
#   - vectors.py       : Legacy brute-force vector retrieval
#   - completion.py    : OpenAI-compatible completion/embedding adapter
#   - engine.py        : Engine handle (initialize / ask / release)
#   - evaluation.py    : Parity cases against expected rules and entities
#   - run_tracker.py   : Track CLI runs in ./runs folder

from rulepack.engine import AskOptions, AskResult, BusyState, Engine, LoadState
from rulepack.errors import EngineError
from rulepack.loader import DataState, InitParams
from rulepack.reader import DirectoryPackReader, PackFileReader

__all__ = [
    'AskOptions',
    'AskResult',
    'BusyState',
    'DataState',
    'DirectoryPackReader',
    'Engine',
    'EngineError',
    'InitParams',
    'LoadState',
    'PackFileReader',
]
