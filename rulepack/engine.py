# =============================================================================
# Engine
# =============================================================================
# The engine handle owns everything a loaded pack needs: the DataState, the
# open read-only stores, the entity resolver and the vector decode cache.
# Hosts talk to it through three operations:
#
#   initialize(params, reader) -> DataState
#   ask(question, options)     -> AskResult
#   release()
#
# plus async wrappers that run the same calls on a worker thread so a GUI
# host never blocks its main loop.
#
# Exactly one question may be in flight per engine. A second concurrent
# ask() is rejected with E_BUSY instead of queuing behind the first.

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from rulepack.analyzer import EntityResolver, analyze_query, entity_tokens
from rulepack.assembler import ContextBundle, RoutingTrace, assemble, render_raw_bundle
from rulepack.config import default_config, prompt_char_cap
from rulepack.errors import (
    EngineError,
    E_BUSY,
    E_COMPLETION,
    E_EMBED,
    E_NOT_INITIALIZED,
)
from rulepack.loader import load_pack
from rulepack.prompt import trim_to_fit
from rulepack.reader import DirectoryPackReader
from rulepack.router import route
from rulepack.scoring import create_section_executor, select_rules
from rulepack.store import CardsStore, Entity, Rule, RulesStore, SqliteStoragePort
from rulepack.vectors import VectorCache, vector_retrieve

MODE_DETERMINISTIC = 'deterministic'
MODE_VECTOR = 'vector'


class LoadState(Enum):
    UNLOADED = 'unloaded'
    LOADING = 'loading'
    LOADED = 'loaded'
    LOAD_FAILED = 'load_failed'


class BusyState(Enum):
    IDLE = 'idle'
    BUSY = 'busy'


@dataclass
class AskOptions:
    """
    Per-question options.

    Args:
        cancel_event: threading.Event; once set, the call returns a cancelled
            result at its next checkpoint
        completion: Callable prompt -> text (the external model); when
            omitted the result carries the prompt only
        embed: Callable text -> vector, required by the vector path
    """
    cancel_event: Optional[threading.Event] = None
    completion: Optional[Callable[[str], str]] = None
    embed: Optional[Callable[[str], Any]] = None

    @property
    def cancelled(self):
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class AskResult:
    raw_bundle: str = ''
    prompt: str = ''
    prompt_char_len: int = 0
    routing_trace: RoutingTrace = field(default_factory=lambda: RoutingTrace((), ()))
    bundle: ContextBundle = field(default_factory=ContextBundle)
    warnings: List[dict] = field(default_factory=list)
    cancelled: bool = False
    completion: Optional[str] = None
    mode: str = MODE_DETERMINISTIC
    analysis: Any = None

    def to_dict(self):
        data = {
            'mode': self.mode,
            'cancelled': self.cancelled,
            'raw_bundle': self.raw_bundle,
            'prompt': self.prompt,
            'prompt_char_len': self.prompt_char_len,
            'routing_trace': self.routing_trace.to_dict(),
            'bundle': self.bundle.to_dict(),
            'warnings': list(self.warnings),
            'completion': self.completion,
        }
        if self.analysis is not None:
            data['resolved_entity'] = self.analysis.resolved_entity_name
            data['resolution_step'] = self.analysis.resolution_step
        return data


def _clip(text, limit):
    text = (text or '').replace('\n', ' ')
    return text if len(text) <= limit else text[:limit] + '...'


class Engine:
    """
    Retrieval and context-assembly engine for one content pack.

    Args:
        config: Configuration dictionary (defaults to DEFAULT_CONFIG); a
            pack's rag_config.json is applied on top at initialize time
        logger: Optional logger (defaults to the 'rulepack' logger)
        storage_factory: Callable db_path -> StoragePort
    """

    def __init__(self, config=None, logger=None, storage_factory=SqliteStoragePort):
        self.base_config = config if config is not None else default_config()
        self.logger = logger or logging.getLogger('rulepack')
        self.storage_factory = storage_factory

        self.load_state = LoadState.UNLOADED
        self.state = None
        self.params = None
        self._root = None
        self._error = None
        self._reader = None
        self._ports = []
        self.rules_store = None
        self.cards_store = None
        self.resolver = None
        self.vector_cache = VectorCache()
        self._executor = None

        self._init_lock = threading.Lock()
        self._busy_lock = threading.Lock()
        self.load_count = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @property
    def busy_state(self):
        return BusyState.BUSY if self._busy_lock.locked() else BusyState.IDLE

    def initialize(self, params, reader=None):
        """
        Load and validate a pack.

        Calling again with the same root returns the cached DataState without
        reading anything. A failed load is terminal for that root: later calls
        re-raise the stored error until release(). A different root tears the
        current state down and loads the new pack.

        Args:
            params: InitParams
            reader: Optional PackFileReader (a DirectoryPackReader over
                params.pack_root by default)

        Returns:
            DataState: The loaded pack state

        Raises:
            EngineError: Any initialization error kind
        """
        root = str(params.pack_root)
        with self._init_lock:
            if self._root == root:
                if self.load_state == LoadState.LOADED:
                    return self.state
                if self.load_state == LoadState.LOAD_FAILED:
                    raise self._error
            if self.load_state != LoadState.UNLOADED:
                self.logger.info(f"Re-initializing: releasing pack at {self._root}")
                self._teardown()

            reader = reader or DirectoryPackReader(root)
            self._root = root
            self.load_state = LoadState.LOADING
            self.load_count += 1
            try:
                state = load_pack(reader, params, self.base_config, logger=self.logger)
                self._open_stores(reader, state)
            except Exception as e:
                self._close_ports()
                self._error = e
                self.load_state = LoadState.LOAD_FAILED
                self.logger.error(f"Pack load failed: {e}")
                raise

            self.state = state
            self.params = params
            self._reader = reader
            self._executor = create_section_executor(state.config)
            self.load_state = LoadState.LOADED
            self.logger.info(
                f"Pack loaded: {self.rules_store.count()} rules, {self.cards_store.count()} cards"
            )
            return state

    def _db_path(self, reader, relative_path):
        if hasattr(reader, 'absolute'):
            return reader.absolute(relative_path)
        return os.path.join(self._root, relative_path)

    def _open_stores(self, reader, state):
        self.logger.info(f"Opening stores: {state.rules_db_path}, {state.cards_db_path}")
        rules_port = self.storage_factory(self._db_path(reader, state.rules_db_path))
        self._ports.append(rules_port)
        rules_port.open()
        cards_port = self.storage_factory(self._db_path(reader, state.cards_db_path))
        self._ports.append(cards_port)
        cards_port.open()

        self.rules_store = RulesStore(rules_port)
        self.cards_store = CardsStore(cards_port)
        self.resolver = EntityResolver(self.cards_store, state.router_config.resolver)

    def _close_ports(self):
        for port in self._ports:
            port.close()
        self._ports = []
        self.rules_store = None
        self.cards_store = None
        self.resolver = None

    def _teardown(self):
        self._close_ports()
        self.vector_cache.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.state = None
        self.params = None
        self._reader = None
        self._root = None
        self._error = None
        self.load_state = LoadState.UNLOADED

    def release(self):
        """Close the stores, drop all cached state and return to Unloaded."""
        with self._init_lock:
            if self.load_state != LoadState.UNLOADED:
                self.logger.info(f"Releasing pack at {self._root}")
            self._teardown()

    # -------------------------------------------------------------------------
    # Question path
    # -------------------------------------------------------------------------
    def ask(self, question, options=None):
        """
        Build the context bundle and prompt for one question, and run the
        completion callable when one is given.

        Args:
            question: The user's question
            options: Optional AskOptions

        Returns:
            AskResult: raw_bundle, prompt, prompt_char_len and routing_trace,
                plus the bundle itself, warnings and the completion text

        Raises:
            EngineError: E_NOT_INITIALIZED, E_BUSY, or a per-call kind
                (E_EMBED, E_RETRIEVAL, E_STORE, E_COMPLETION)
        """
        options = options or AskOptions()
        if self.load_state != LoadState.LOADED:
            raise EngineError(E_NOT_INITIALIZED, 'Engine not initialized; call initialize() first', {
                'load_state': self.load_state.value,
            })
        if not self._busy_lock.acquire(blocking=False):
            raise EngineError(E_BUSY, 'Another question is already in progress')
        try:
            return self._ask(question, options)
        finally:
            self._busy_lock.release()

    def _ask(self, question, options):
        mode = MODE_DETERMINISTIC if self.params.deterministic_only else MODE_VECTOR
        if options.cancelled:
            self.logger.debug('Question cancelled before retrieval')
            return AskResult(cancelled=True, mode=mode)

        config = self.state.config
        analysis = None
        if mode == MODE_DETERMINISTIC:
            analysis, bundle = self.build_bundle(question)
        else:
            bundle = self._vector_bundle(question, options)

        raw_bundle = render_raw_bundle(bundle)
        if options.cancelled:
            self.logger.debug('Question cancelled before prompt build')
            return AskResult(
                raw_bundle=raw_bundle,
                routing_trace=bundle.routing_trace,
                bundle=bundle,
                cancelled=True,
                mode=mode,
                analysis=analysis,
            )

        fitted = trim_to_fit(
            bundle,
            question,
            prompt_char_cap(config),
            system_instruction=config['prompt']['system_instruction'],
            chars_per_token=config['context']['chars_per_token'],
            logger=self.logger,
        )
        if fitted.dropped:
            raw_bundle = render_raw_bundle(fitted.bundle)

        preview = config['debug']['prompt_preview_len']
        self.logger.debug(f"Prompt ({fitted.char_len} chars): {_clip(fitted.prompt, preview)}")

        result = AskResult(
            raw_bundle=raw_bundle,
            prompt=fitted.prompt,
            prompt_char_len=fitted.char_len,
            routing_trace=fitted.bundle.routing_trace,
            bundle=fitted.bundle,
            warnings=fitted.warnings,
            mode=mode,
            analysis=analysis,
        )

        if options.completion is not None:
            if options.cancelled:
                self.logger.debug('Question cancelled before completion')
                result.cancelled = True
                return result
            result.completion = self._run_completion(options.completion, fitted.prompt)
        return result

    def _run_completion(self, completion_fn, prompt):
        try:
            return completion_fn(prompt)
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(E_COMPLETION, f"Completion failed: {e}") from e

    def build_bundle(self, question):
        """
        Deterministic path: analyze, route, score and pack.

        Returns:
            tuple: (QueryAnalysis, ContextBundle)
        """
        if self.load_state != LoadState.LOADED:
            raise EngineError(E_NOT_INITIALIZED, 'Engine not initialized; call initialize() first')

        state = self.state
        config = state.config
        excerpt_len = config['debug']['excerpt_len']
        rc = state.router_config

        analysis = analyze_query(question, rc, state.provider_spec, self.resolver)
        self.logger.debug(
            f"Query '{_clip(analysis.normalized_query, excerpt_len)}' "
            f"keywords={list(analysis.keyword_tokens)} "
            f"entity={analysis.resolved_entity_name} step={analysis.resolution_step}"
        )

        ent_tokens = entity_tokens(analysis.resolved_entity, rc, state.provider_spec)
        plan = route(analysis, rc, ent_tokens)
        self.logger.debug(
            f"Routing: sections={list(plan.sections)} "
            f"hard_includes={list(plan.hard_include_prefixes)} "
            f"concepts={list(plan.concept_default_rule_ids)}"
        )

        selection = select_rules(
            analysis, plan, ent_tokens, rc, self.rules_store, config['context'],
            executor=self._executor, logger=self.logger,
        )
        trace = RoutingTrace(selection.sections_considered, selection.sections_selected)

        entities = (analysis.resolved_entity,) if analysis.resolved_entity else ()
        keywords = tuple(analysis.keyword_tokens)
        keywords += tuple(t for t in ent_tokens if t not in keywords)
        bundle = assemble(
            entities,
            selection.definitions,
            selection.mechanism,
            selection.supporting,
            budget=config['context']['budget'],
            chars_per_token=config['context']['chars_per_token'],
            max_definitions=config['context']['max_definitions'],
            keywords=keywords,
            routing_trace=trace,
        )
        for rule in bundle.rules:
            self.logger.debug(f"Bundle rule {rule.rule_id}: {_clip(rule.text, excerpt_len)}")
        return analysis, bundle

    def _vector_bundle(self, question, options):
        if options.embed is None:
            raise EngineError(E_EMBED, 'Vector path needs an embed callable in AskOptions')
        try:
            query_vector = options.embed(question)
        except EngineError:
            raise
        except Exception as e:
            raise EngineError(E_EMBED, f"Embedding failed: {e}") from e

        config = self.state.config
        chunks = vector_retrieve(
            self._reader, self.state, self.vector_cache, query_vector,
            config['retrieval'], logger=self.logger,
        )
        entities = []
        rules = []
        for chunk in chunks:
            if chunk['source_type'] == 'cards':
                name = chunk['title'] or chunk['doc_id']
                entities.append(Entity(chunk['doc_id'], name, '', chunk['text']))
            else:
                rules.append(Rule(chunk['doc_id'], 0, chunk['text']))

        return assemble(
            entities, (), rules, (),
            budget=config['context']['budget'],
            chars_per_token=config['context']['chars_per_token'],
        )

    # -------------------------------------------------------------------------
    # Async wrappers
    # -------------------------------------------------------------------------
    async def initialize_async(self, params, reader=None):
        return await asyncio.to_thread(self.initialize, params, reader)

    async def ask_async(self, question, options=None):
        return await asyncio.to_thread(self.ask, question, options)
