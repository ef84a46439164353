"""
Search index mirror backed by Redis and RediSearch.

Each document is a hash holding its JSON body plus the fields the
collection's index is built on. A reference key maps the entity id to the
document's internal id:

    <prefix>:<collection>:doc:<internal_id>  -> HASH doc, body, created_ts, tag_<path>...
    <prefix>:<collection>:ref:<entity id>    -> internal_id
    <prefix>:<collection>:idx                -> FT index over the doc hashes

Queries use a small subset of the Lucene query-string syntax, clauses joined
with ``AND``, and are translated to RediSearch syntax:

    customer.id:"42" AND state:pending AND vegan
    -> @tag_customer_id:{42} @tag_state:{pending} @body:vegan*
"""

import json
import logging
import re
import time
import uuid
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from redis.asyncio import Redis
from redis.commands.search.field import NumericField, TagField, TextField
from redis.commands.search.index_definition import IndexDefinition, IndexType
from redis.commands.search.query import Query
from redis.exceptions import ResponseError

from .errors import ValidationError

logger = logging.getLogger("search_index")

_AND = re.compile(r"\s+AND\s+")
_FIELD_CLAUSE = re.compile(r'^([\w.]+):(?:"([^"]*)"|(\S+))$')
_WORD = re.compile(r"\w+")
_TAG_SPECIAL = re.compile(r"(\W)")


class FieldClause(NamedTuple):
    path: str
    value: str


class TermClause(NamedTuple):
    text: str


def parse_query(query_string: Optional[str]) -> List[Any]:
    """Split a query string into field and free-text clauses."""
    query_string = (query_string or "").strip()
    if not query_string or query_string == "*":
        return []

    clauses: List[Any] = []
    for part in _AND.split(query_string):
        part = part.strip()
        if not part:
            continue
        match = _FIELD_CLAUSE.match(part)
        if match:
            path, quoted, bare = match.groups()
            clauses.append(FieldClause(path, quoted if quoted is not None else bare))
            continue
        for word in part.split():
            word = word.strip('"').lower()
            if word:
                clauses.append(TermClause(word))
    return clauses


def tag_field_name(path: str) -> str:
    return "tag_" + path.replace(".", "_")


def escape_tag(value: str) -> str:
    return _TAG_SPECIAL.sub(r"\\\1", value)


def build_query(clauses: List[Any], tag_paths: Iterable[str]) -> str:
    """
    Translate parsed clauses into a RediSearch query. Field clauses must name
    one of the collection's tag paths; free-text terms are prefix matches on
    the body field.
    """
    tag_paths = set(tag_paths)
    parts = []
    for clause in clauses:
        if isinstance(clause, FieldClause):
            if clause.path not in tag_paths:
                raise ValidationError(f"Field '{clause.path}' is not searchable",
                                      details={"searchable": sorted(tag_paths)})
            parts.append(f"@{tag_field_name(clause.path)}:{{{escape_tag(clause.value)}}}")
        else:
            for word in _WORD.findall(clause.text):
                # RediSearch rejects prefixes shorter than two characters
                parts.append(f"@body:{word}*" if len(word) > 1 else f"@body:{word}")
    return " ".join(parts) or "*"


def _resolve(doc: Any, path: str) -> Any:
    value = doc
    for key in path.split("."):
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


def _leaves(value: Any):
    if isinstance(value, dict):
        for item in value.values():
            yield from _leaves(item)
    elif isinstance(value, list):
        for item in value:
            yield from _leaves(item)
    elif value is not None:
        yield value


def _tag_value(value: Any) -> Optional[str]:
    if value is None or value == []:
        return None
    if isinstance(value, list):
        return ",".join(str(item) for item in value if item is not None)
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


class SearchIndex:
    """Query-optimized mirror of the relational records."""

    def __init__(self, redis: Redis, prefix: str = "search",
                 tag_fields: Optional[Dict[str, Tuple[str, ...]]] = None,
                 lock_timeout: float = 10.0, lock_wait: float = 5.0):
        # The client must be created with decode_responses=True
        self.redis = redis
        self.prefix = prefix
        self.tag_fields = tag_fields or {}
        self.lock_timeout = lock_timeout
        self.lock_wait = lock_wait
        self._ready = set()

    # --- keys ---

    def _doc_key(self, collection: str, internal_id: str) -> str:
        return f"{self.prefix}:{collection}:doc:{internal_id}"

    def _ref_key(self, collection: str, doc_id: Any) -> str:
        return f"{self.prefix}:{collection}:ref:{doc_id}"

    def _index_name(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:idx"

    def _lock(self, collection: str, doc_id: Any):
        # Keyed by entity id so a create-on-miss and a merge of the same entity serialize
        return self.redis.lock(
            f"{self.prefix}:lock:{collection}:{doc_id}",
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_wait,
        )

    # --- indexes ---

    async def ensure_indexes(self) -> None:
        for collection in self.tag_fields:
            await self._ensure_index(collection)

    async def _ensure_index(self, collection: str) -> None:
        if collection in self._ready:
            return
        ft = self.redis.ft(self._index_name(collection))
        try:
            await ft.info()
        except ResponseError:
            fields = [
                TextField("body"),
                NumericField("created_ts", sortable=True),
                *(TagField(tag_field_name(path)) for path in self.tag_fields.get(collection, ())),
            ]
            definition = IndexDefinition(
                prefix=[f"{self.prefix}:{collection}:doc:"], index_type=IndexType.HASH
            )
            try:
                await ft.create_index(fields, definition=definition)
                logger.info(f"Created search index {self._index_name(collection)}")
            except ResponseError as e:
                if "already exists" not in str(e).lower():
                    raise
        self._ready.add(collection)

    def _hash_fields(self, collection: str, doc: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        mapping = {
            "doc": json.dumps(doc),
            "body": " ".join(str(leaf) for leaf in _leaves(doc)),
        }
        cleared = []
        for path in self.tag_fields.get(collection, ()):
            value = _tag_value(_resolve(doc, path))
            if value is None:
                cleared.append(tag_field_name(path))
            else:
                mapping[tag_field_name(path)] = value
        return mapping, cleared

    # --- documents ---

    async def create_doc(self, collection: str, doc: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        internal_id = uuid.uuid4().hex
        mapping, _ = self._hash_fields(collection, doc)
        mapping["created_ts"] = time.time()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._doc_key(collection, internal_id), mapping=mapping)
            if doc.get("id") is not None:
                pipe.set(self._ref_key(collection, doc["id"]), internal_id)
            await pipe.execute()
        logger.debug(f"Created {collection} document {internal_id}")
        return internal_id, doc

    async def get_doc(self, collection: str, doc_id: Any) -> Optional[Tuple[str, Dict[str, Any]]]:
        internal_id = await self.redis.get(self._ref_key(collection, doc_id))
        if internal_id is None:
            return None
        raw = await self.redis.hget(self._doc_key(collection, internal_id), "doc")
        if raw is None:
            return None
        return internal_id, json.loads(raw)

    async def update_doc(self, collection: str, partial_doc: Dict[str, Any], internal_id: str) -> None:
        """Shallow-merge partial_doc into the stored document."""
        raw = await self.redis.hget(self._doc_key(collection, internal_id), "doc")
        if raw is None:
            raise KeyError(f"No {collection} document {internal_id}")
        doc_id = json.loads(raw).get("id")
        async with self._lock(collection, doc_id if doc_id is not None else internal_id):
            await self._merge(collection, partial_doc, internal_id)

    async def upsert_doc(self, collection: str, doc: Dict[str, Any]) -> None:
        """Create the document for doc["id"], or shallow-merge doc into the existing one."""
        async with self._lock(collection, doc["id"]):
            found = await self.get_doc(collection, doc["id"])
            if found is None:
                await self.create_doc(collection, doc)
            else:
                await self._merge(collection, doc, found[0])

    async def _merge(self, collection: str, partial_doc: Dict[str, Any], internal_id: str) -> None:
        key = self._doc_key(collection, internal_id)
        raw = await self.redis.hget(key, "doc")
        if raw is None:
            raise KeyError(f"No {collection} document {internal_id}")
        doc = json.loads(raw)
        doc.update(partial_doc)
        mapping, cleared = self._hash_fields(collection, doc)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=mapping)
            if cleared:
                pipe.hdel(key, *cleared)
            await pipe.execute()

    async def remove_doc(self, collection: str, internal_id: str) -> None:
        key = self._doc_key(collection, internal_id)
        raw = await self.redis.hget(key, "doc")
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            if raw is not None:
                doc_id = json.loads(raw).get("id")
                if doc_id is not None:
                    pipe.delete(self._ref_key(collection, doc_id))
            await pipe.execute()
        logger.debug(f"Removed {collection} document {internal_id}")

    async def query(self, collection: str, query_string: Optional[str], limit: int = 10,
                    offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of matching documents, oldest first, and the total number of matches."""
        redis_query = build_query(parse_query(query_string), self.tag_fields.get(collection, ()))
        await self._ensure_index(collection)

        query = (
            Query(redis_query)
            .return_fields("doc")
            .sort_by("created_ts", asc=True)
            .paging(offset, limit)
            .dialect(2)
        )
        result = await self.redis.ft(self._index_name(collection)).search(query)
        docs = [json.loads(hit.doc) for hit in result.docs if getattr(hit, "doc", None)]
        return docs, int(result.total)

    # --- aggregate lists ---

    async def add_to_list(self, collection: str, doc_id: Any, field: str, value: Any,
                          extra: Optional[Dict[str, Any]] = None) -> None:
        """
        Append value to a list field of the document for doc_id, once.
        The lookup, the create-on-miss and the merge all run under the
        entity's lock so concurrent appends are neither lost nor duplicated.
        """
        extra = extra or {}
        async with self._lock(collection, doc_id):
            found = await self.get_doc(collection, doc_id)
            if found is None:
                logger.warning(f"No {collection} document for {doc_id}; creating one")
                await self.create_doc(collection, {"id": doc_id, field: [value], **extra})
                return

            internal_id, doc = found
            items = list(doc.get(field) or [])
            if value not in items:
                items.append(value)
            await self._merge(collection, {field: items, **extra}, internal_id)

    async def remove_from_list(self, collection: str, doc_id: Any, field: str, value: Any) -> None:
        async with self._lock(collection, doc_id):
            found = await self.get_doc(collection, doc_id)
            if found is None:
                logger.warning(f"No {collection} document for {doc_id}; nothing to remove")
                return

            internal_id, doc = found
            items = [item for item in (doc.get(field) or []) if item != value]
            await self._merge(collection, {field: items}, internal_id)
