# =============================================================================
# Engine Errors
# =============================================================================
# Every failure the engine reports is an EngineError carrying a stable,
# machine-readable kind plus a human-readable message and optional details
# (for example the two mismatched embedding ids).

# Initialization (format) errors - fatal to initialize()
E_PACK_LOAD = 'E_PACK_LOAD'
E_PACK_SCHEMA = 'E_PACK_SCHEMA'
E_RETRIEVAL_FORMAT = 'E_RETRIEVAL_FORMAT'
E_VALIDATE_CAPABILITY = 'E_VALIDATE_CAPABILITY'
E_VALIDATE_SCHEMA = 'E_VALIDATE_SCHEMA'
E_VALIDATE_FILES = 'E_VALIDATE_FILES'
E_CONTEXT_PROVIDER = 'E_CONTEXT_PROVIDER'
E_INDEX_META = 'E_INDEX_META'
E_STORE = 'E_STORE'

# Version skew between data and app - fatal to initialize()
E_EMBED_MISMATCH = 'E_EMBED_MISMATCH'
E_COUNTS_MISMATCH = 'E_COUNTS_MISMATCH'

# Fatal to a single ask() call only
E_NOT_INITIALIZED = 'E_NOT_INITIALIZED'
E_BUSY = 'E_BUSY'
E_EMBED = 'E_EMBED'
E_RETRIEVAL = 'E_RETRIEVAL'
E_COMPLETION = 'E_COMPLETION'

ERROR_KINDS = frozenset({
    E_PACK_LOAD,
    E_PACK_SCHEMA,
    E_RETRIEVAL_FORMAT,
    E_VALIDATE_CAPABILITY,
    E_VALIDATE_SCHEMA,
    E_VALIDATE_FILES,
    E_CONTEXT_PROVIDER,
    E_INDEX_META,
    E_STORE,
    E_EMBED_MISMATCH,
    E_COUNTS_MISMATCH,
    E_NOT_INITIALIZED,
    E_BUSY,
    E_EMBED,
    E_RETRIEVAL,
    E_COMPLETION,
})

# Warnings are returned alongside a degraded result, never raised
W_PROMPT_OVERFLOW = 'W_PROMPT_OVERFLOW'


class EngineError(Exception):
    """
    Structured engine failure.

    Args:
        kind: One of ERROR_KINDS
        message: Human-readable description
        details: Optional dict with structured context
    """

    def __init__(self, kind, message, details=None):
        if kind not in ERROR_KINDS:
            raise ValueError(f"Unknown error kind: {kind}")
        super().__init__(f"[{kind}] {message}")
        self.kind = kind
        self.message = message
        self.details = dict(details) if details else {}

    def to_dict(self):
        """Serializable form handed to the host."""
        data = {'kind': self.kind, 'message': self.message}
        if self.details:
            data['details'] = dict(self.details)
        return data


def make_warning(kind, message, details=None):
    """Build a warning record for AskResult.warnings."""
    warning = {'kind': kind, 'message': message}
    if details:
        warning['details'] = dict(details)
    return warning
