# =============================================================================
# Vector Retrieval (legacy path)
# =============================================================================
# Brute-force nearest-neighbour search over the pack's half-precision vector
# blobs. Only used when the engine is initialized with deterministic_only
# set to False; its results never mix with the deterministic path.
#
# Blob layout: row-major little-endian float16, `dim` values per row, row i
# matching line i of row_map.jsonl and chunks.jsonl.

import heapq
import json
from dataclasses import dataclass

import numpy as np

from rulepack.errors import EngineError, E_RETRIEVAL

F16_LE = np.dtype('<f2')


@dataclass
class VectorIndex:
    key: str
    vectors: np.ndarray
    dim: int
    n_rows: int
    metric: str = 'l2'
    normalized: bool = False


@dataclass(frozen=True)
class Hit:
    source_type: str
    row_id: int
    distance: float
    score: float = 0.0


def decode_f16(raw, dim):
    """
    Decode a little-endian float16 blob into a (rows, dim) float32 matrix.

    Raises:
        EngineError: E_RETRIEVAL if the blob is not a whole number of rows
    """
    row_bytes = dim * F16_LE.itemsize
    if dim <= 0 or len(raw) % row_bytes != 0:
        raise EngineError(E_RETRIEVAL, 'Vector blob size is not a multiple of the row size', {
            'bytes': len(raw),
            'dim': dim,
        })
    flat = np.frombuffer(raw, dtype=F16_LE)
    return flat.astype(np.float32).reshape(-1, dim)


def l2_normalize(matrix):
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class VectorCache:
    """
    Decoded vector indices, keyed by (index key, blob path).

    One cache belongs to one engine handle and is cleared whenever that
    engine releases or re-initializes.
    """

    def __init__(self):
        self._indices = {}

    def __len__(self):
        return len(self._indices)

    def clear(self):
        self._indices.clear()

    def load(self, reader, index_key, index_paths):
        """
        Return the decoded index, reading and decoding the blob on first use.

        Args:
            reader: PackFileReader scoped to the pack root
            index_key: 'rules' or 'cards'
            index_paths: IndexPaths from the DataState
        """
        cache_key = (index_key, index_paths.vectors_path)
        cached = self._indices.get(cache_key)
        if cached is not None:
            return cached

        meta = index_paths.meta
        try:
            raw = reader.read_bytes(index_paths.vectors_path)
        except OSError as e:
            raise EngineError(E_RETRIEVAL, f"Cannot read vectors: {index_paths.vectors_path}", {
                'cause': str(e),
            }) from e

        vectors = decode_f16(raw, meta.dim)
        n_rows = vectors.shape[0]
        if meta.max_rows is not None and n_rows > meta.max_rows:
            raise EngineError(E_RETRIEVAL, f"Index exceeds max_rows: {n_rows} > {meta.max_rows}", {
                'index': index_key,
                'rows': n_rows,
                'max_rows': meta.max_rows,
            })

        normalized = meta.normalize or meta.metric == 'cosine'
        if normalized:
            vectors = l2_normalize(vectors)

        index = VectorIndex(
            key=index_key,
            vectors=vectors,
            dim=meta.dim,
            n_rows=n_rows,
            metric=meta.metric,
            normalized=normalized,
        )
        self._indices[cache_key] = index
        return index


def search_l2(index, query_vector, k):
    """
    Brute-force Euclidean top-k.

    Distances are computed in one vectorized pass; a bounded heap then keeps
    the k closest rows, ties broken by lower row id.

    Args:
        index: VectorIndex
        query_vector: Sequence of floats with length index.dim
        k: Number of hits to return

    Returns:
        list: (row_id, distance) pairs sorted ascending by distance
    """
    query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
    if query.shape[0] != index.dim:
        raise EngineError(E_RETRIEVAL, f"Query dim {query.shape[0]} != index dim {index.dim}", {
            'index': index.key,
            'query_dim': int(query.shape[0]),
            'index_dim': index.dim,
        })
    if k <= 0 or index.n_rows == 0:
        return []
    if index.normalized:
        query = l2_normalize(query)

    distances = np.linalg.norm(index.vectors - query, axis=1)
    best = heapq.nsmallest(
        min(k, index.n_rows),
        ((float(d), row) for row, d in enumerate(distances)),
    )
    return [(row, d) for d, row in best]


def merge_hits(rules_hits, cards_hits, rules_weight=0.6, cards_weight=0.4):
    """
    Merge per-index hits into one list ordered by weighted similarity.

    Each side's distances are scaled by that side's largest distance, so a
    hit's score is weight * (1 - distance / max_distance).
    """
    merged = []
    for source, hits, weight in (('rules', rules_hits, rules_weight),
                                 ('cards', cards_hits, cards_weight)):
        worst = max((d for _, d in hits), default=1.0)
        for row, distance in hits:
            relative = distance / worst if worst > 0 else 0.0
            merged.append(Hit(source, row, distance, weight * (1.0 - relative)))
    merged.sort(key=lambda h: (-h.score, h.source_type, h.row_id))
    return merged


def _jsonl_lines(reader, path):
    try:
        raw = reader.read_text(path)
    except UnicodeDecodeError as e:
        raise EngineError(E_RETRIEVAL, f"Not valid UTF-8: {path}", {'cause': str(e)}) from e
    except OSError as e:
        raise EngineError(E_RETRIEVAL, f"Cannot read {path}", {'cause': str(e)}) from e
    return [line for line in raw.split('\n') if line.strip()]


def _parse_line(line, path, row):
    try:
        data = json.loads(line)
    except ValueError as e:
        raise EngineError(E_RETRIEVAL, f"Malformed line {row} in {path}", {'cause': str(e)}) from e
    if not isinstance(data, dict):
        raise EngineError(E_RETRIEVAL, f"Line {row} in {path} is not an object")
    return data


def load_row_map(reader, row_map_path, row_ids=None):
    """doc_id per row id. With row_ids given only those rows are decoded."""
    wanted = set(row_ids) if row_ids is not None else None
    doc_ids = {}
    for row, line in enumerate(_jsonl_lines(reader, row_map_path)):
        if wanted is not None and row not in wanted:
            continue
        doc_ids[row] = str(_parse_line(line, row_map_path, row).get('doc_id') or '')
    return doc_ids


def load_chunks_for_rows(reader, chunks_path, row_ids):
    """
    Fetch chunk records for the given rows only.

    Lines for other rows are skipped without being decoded.

    Returns:
        dict: row id -> {'doc_id', 'title', 'text'}
    """
    wanted = set(row_ids)
    chunks = {}
    for row, line in enumerate(_jsonl_lines(reader, chunks_path)):
        if row not in wanted:
            continue
        data = _parse_line(line, chunks_path, row)
        chunks[row] = {
            'doc_id': str(data.get('doc_id') or ''),
            'title': data.get('title'),
            'text': data.get('text') or '',
        }
        if len(chunks) == len(wanted):
            break
    return chunks


def vector_retrieve(reader, state, cache, query_vector, retrieval_config, logger=None):
    """
    Run the whole legacy path: top-k per index, weighted merge, chunk fetch.

    Args:
        reader: PackFileReader scoped to the pack root
        state: DataState
        cache: VectorCache owned by the engine
        query_vector: Embedded question
        retrieval_config: The 'retrieval' section of the engine config
        logger: Optional logger

    Returns:
        list: Chunk dicts ({'source_type', 'row_id', 'doc_id', 'title',
            'text', 'score'}) in merged order
    """
    if state.rules.meta.dim != state.cards.meta.dim:
        raise EngineError(E_RETRIEVAL, 'Rules and cards index dim mismatch', {
            'rules_dim': state.rules.meta.dim,
            'cards_dim': state.cards.meta.dim,
        })

    rules_index = cache.load(reader, 'rules', state.rules)
    cards_index = cache.load(reader, 'cards', state.cards)

    rules_hits = search_l2(rules_index, query_vector, int(retrieval_config['top_k_rules']))
    cards_hits = search_l2(cards_index, query_vector, int(retrieval_config['top_k_cards']))
    merged = merge_hits(
        rules_hits, cards_hits,
        retrieval_config['rules_weight'], retrieval_config['cards_weight'],
    )[:int(retrieval_config['top_k_merge'])]

    if logger:
        logger.debug(f"Vector hits: {len(rules_hits)} rules, {len(cards_hits)} cards, {len(merged)} merged")

    paths = {'rules': state.rules, 'cards': state.cards}
    loaded = {}
    for source, index_paths in paths.items():
        rows = [h.row_id for h in merged if h.source_type == source]
        if not rows:
            loaded[source] = ({}, {})
            continue
        loaded[source] = (
            load_chunks_for_rows(reader, index_paths.chunks_path, rows),
            load_row_map(reader, index_paths.row_map_path, rows),
        )

    results = []
    for hit in merged:
        chunks, row_map = loaded[hit.source_type]
        chunk = chunks.get(hit.row_id, {})
        doc_id = chunk.get('doc_id') or row_map.get(hit.row_id) or f"{hit.source_type}:{hit.row_id}"
        results.append({
            'source_type': hit.source_type,
            'row_id': hit.row_id,
            'doc_id': doc_id,
            'title': chunk.get('title'),
            'text': chunk.get('text', ''),
            'score': hit.score,
        })
    return results
