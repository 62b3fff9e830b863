"""Pydantic models for keyword records, candidate pairs, clusters and run summaries.

Firestore documents in the keyword collection carry the fields
``id``, ``keyword``, ``description``, ``embedding`` (text embedding) and
``name_embedding``. The models here translate those documents into the
names the pipeline works with.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Enums
# ============================================================================


class MergeAction(str, Enum):
    """Action chosen for a (primary, secondary) keyword pair."""

    MERGE = "merge"
    RENAME = "rename"
    SKIP = "skip"


class DedupeMode(str, Enum):
    """How clusters are resolved in a run."""

    LLM = "llm"
    AGGRESSIVE = "aggressive"


class TriggeredBy(str, Enum):
    """How the dedupe run was initiated."""

    CLI = "cli"
    MANUAL = "manual"
    SCHEDULED = "scheduled"


def coerce_embedding(value: Any) -> Optional[List[float]]:
    """Coerce a stored embedding into a list of floats.

    Embeddings written by other tools may be stored as JSON strings. Anything
    that does not parse into a non-empty list is treated as missing.
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(value, (list, tuple)) or len(value) == 0:
        return None
    try:
        return [float(v) for v in value]
    except (TypeError, ValueError):
        return None


# ============================================================================
# Keyword record
# ============================================================================


class Keyword(BaseModel):
    """A keyword (topic) node that is a deduplication candidate.

    Collection: {prefix}keywords
    Document ID: str(id)
    """

    id: int = Field(..., description="Stable integer id; lowest id is the canonical record.")
    name: str = Field(..., description="Display name of the keyword.")
    description: Optional[str] = Field(None, description="Optional free-text description.")
    text_embedding: Optional[List[float]] = Field(
        None, description="Embedding of name + description."
    )
    name_embedding: Optional[List[float]] = Field(None, description="Embedding of the name alone.")

    @field_validator("text_embedding", "name_embedding", mode="before")
    @classmethod
    def _coerce_embedding(cls, value: Any) -> Optional[List[float]]:
        return coerce_embedding(value)

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @classmethod
    def from_document(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> "Keyword":
        """Build a Keyword from a Firestore document dict."""
        raw_id = data.get("id", doc_id)
        return cls(
            id=int(raw_id),
            name=data.get("keyword"),
            description=data.get("description"),
            text_embedding=data.get("embedding"),
            name_embedding=data.get("name_embedding"),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict."""
        return {
            "id": self.id,
            "keyword": self.name,
            "description": self.description,
            "embedding": self.text_embedding,
            "name_embedding": self.name_embedding,
        }

    def label(self) -> str:
        """Short human-readable label used in logs and reports."""
        return f"#{self.id}({self.name})"


# ============================================================================
# Candidate generation and clustering
# ============================================================================


class SimilarityPair(BaseModel):
    """An undirected candidate edge between two keywords with a.id < b.id."""

    a: Keyword
    b: Keyword
    score: float = Field(..., ge=-1.0, le=1.0)

    def describe(self) -> str:
        return f"{self.a.label()} <-> {self.b.label()} sim={self.score:.3f}"


class CandidateSet(BaseModel):
    """Result of candidate generation.

    ``pairs`` are the accepted edges after neighbor capping, sorted by score
    descending. ``top_samples`` holds the highest scoring pairs regardless of
    threshold, for threshold tuning.
    """

    pairs: List[SimilarityPair] = Field(default_factory=list)
    top_samples: List[SimilarityPair] = Field(default_factory=list)
    qualifying_count: int = 0


class Cluster(BaseModel):
    """A set of keywords transitively connected by accepted edges.

    Members are sorted ascending by id; the first member is the primary.
    """

    members: List[Keyword] = Field(..., min_length=2)

    @property
    def primary(self) -> Keyword:
        return self.members[0]

    @property
    def secondaries(self) -> List[Keyword]:
        return self.members[1:]

    @property
    def ids(self) -> List[int]:
        return [member.id for member in self.members]

    def describe(self) -> str:
        return ", ".join(member.label() for member in self.members)


# ============================================================================
# Merge decisions
# ============================================================================


class MergeDecision(BaseModel):
    """Structured decision for one (primary, secondary) pair.

    - merge: keyword/description optional (fall back to primary's values)
    - rename: keyword is the secondary's new name
    - skip: no fields
    """

    action: MergeAction
    keyword: Optional[str] = None
    description: Optional[str] = None

    @field_validator("keyword", "description", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


@dataclass(frozen=True)
class PrimarySnapshot:
    """Latest merged identity of a cluster's surviving record."""

    id: int
    name: str
    description: Optional[str]

    @classmethod
    def of(cls, keyword: Keyword) -> "PrimarySnapshot":
        return cls(id=keyword.id, name=keyword.name, description=keyword.description)

    def as_keyword(self) -> Keyword:
        return Keyword(id=self.id, name=self.name, description=self.description)


@dataclass
class ClusterOutcome:
    """Counters for one processed cluster."""

    primary_id: int
    size: int
    merged: int = 0
    deleted: int = 0
    renamed: int = 0
    skipped: int = 0
    orphaned: int = 0
    decision_failures: int = 0
    mutation_failures: int = 0

    @property
    def changed(self) -> bool:
        return self.merged > 0 or self.deleted > 0


# ============================================================================
# Run summary and HTTP models
# ============================================================================


class DedupeRunSummary(BaseModel):
    """Summary of a dedupe run."""

    run_id: str
    started_at: datetime
    finished_at: datetime
    triggered_by: TriggeredBy = TriggeredBy.CLI
    dry_run: bool
    mode: DedupeMode
    threshold: float
    keywords_loaded: int = 0
    embeddings_written: int = 0
    embedding_failures: int = 0
    candidates: int = 0
    qualifying_pairs: int = 0
    pairs: int = 0
    clusters: int = 0
    clusters_discarded: int = 0
    clusters_merged: int = 0
    keywords_deleted: int = 0
    keywords_renamed: int = 0
    decision_failures: int = 0
    mutation_failures: int = 0
    processing_duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict."""
        result = self.model_dump(mode="json")
        return result


class DedupeRunRequest(BaseModel):
    """Request body for POST /dedupe/run-once."""

    dry_run: Optional[bool] = Field(None, alias="dryRun")
    threshold: Optional[float] = Field(None, description="Similarity threshold override.")
    max_neighbors: Optional[int] = Field(None, alias="maxNeighbors", ge=0)
    aggressive: Optional[bool] = None
    triggered_by: Optional[TriggeredBy] = Field(None, alias="triggeredBy")

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str
    version: str
    embedding_service: str


class ErrorResponse(BaseModel):
    """Error payload for HTTP failures."""

    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
