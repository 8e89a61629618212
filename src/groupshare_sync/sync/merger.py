"""Stroke-level merge of duplicate annotation layers.

Devices working offline may each create a layer for the same
``(fileId, memberId, pageNumber)`` triple.  The merge collapses them:

1. Collect the strokes of every layer sharing the triple.
2. Deduplicate by stroke ``id`` (never by content).
3. Keep the oldest layer (smallest ``createdAt``, then smallest ``id``) as
   the primary, so external references to its id stay valid.
4. Reassign all unique strokes to the primary, ordered by
   ``(createdAt, id)``, and bump its ``updatedAt``.
5. Mark every other layer for deletion.

Layers a member chose to keep separate (``Annotation.separate``) take no
part in a merge.

The result depends only on the set of layers, so merging is commutative
and idempotent: re-merging an already merged layer changes nothing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ..store.base import LocalStore
from .models import Annotation, AnnotationStroke, EntityType, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeOutcome:
    """Result of merging the layers of one key.

    Attributes:
        primary: The surviving layer with the union of strokes.
        deleted_layer_ids: Ids of layers to delete (never the primary's).
        duplicate_strokes: Number of redundant stroke copies dropped.
        changed: ``False`` when the input already was a single merged layer.
    """

    primary: Annotation
    deleted_layer_ids: frozenset[str]
    duplicate_strokes: int
    changed: bool


def _stroke_order(stroke: AnnotationStroke) -> tuple[int, str]:
    return (stroke.created_at, stroke.id)


def _pick_stroke(a: AnnotationStroke, b: AnnotationStroke) -> AnnotationStroke:
    # Copies of one stroke should be equal; if not, keep a deterministic one.
    return min(a, b, key=lambda s: (s.created_at, s.model_dump_json()))


class AnnotationMergeEngine:
    """Merge duplicate annotation layers.

    Args:
        clock: Millisecond clock used for the primary's ``updatedAt``.
        id_factory: Id generator for re-identified layers.
    """

    def __init__(
        self,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def merge(self, layers: Sequence[Annotation]) -> MergeOutcome:
        """Merge layers sharing one layer key.

        Raises:
            ValueError: If *layers* is empty or mixes layer keys.
        """
        if not layers:
            raise ValueError("Cannot merge an empty list of layers")
        keys = {layer.layer_key for layer in layers}
        if len(keys) > 1:
            raise ValueError(f"Cannot merge layers of different keys: {sorted(keys)}")

        strokes: dict[str, AnnotationStroke] = {}
        total = 0
        for layer in layers:
            for stroke in layer.strokes:
                total += 1
                if stroke.id in strokes:
                    strokes[stroke.id] = _pick_stroke(strokes[stroke.id], stroke)
                else:
                    strokes[stroke.id] = stroke

        base = min(layers, key=lambda layer: (layer.created_at, layer.id))
        merged_strokes = sorted(strokes.values(), key=_stroke_order)
        deleted = frozenset(layer.id for layer in layers) - {base.id}
        duplicates = total - len(merged_strokes)

        changed = (
            len(layers) > 1
            or duplicates > 0
            or list(base.strokes) != merged_strokes
        )
        if not changed:
            return MergeOutcome(base, frozenset(), 0, False)

        primary = base.model_copy(
            update={
                "strokes": merged_strokes,
                "updated_at": max(
                    self._clock(), *(layer.updated_at for layer in layers)
                ),
            }
        )
        logger.debug(
            "Merged %d layers for %s into %s: %d strokes, %d duplicates",
            len(layers),
            base.layer_key,
            base.id,
            len(merged_strokes),
            duplicates,
        )
        return MergeOutcome(primary, deleted, duplicates, True)

    def merge_in_store(
        self,
        store: LocalStore,
        file_id: str,
        member_id: str,
        page_number: int,
        incoming: Iterable[Annotation] = (),
    ) -> MergeOutcome | None:
        """Merge stored layers of a key with *incoming* ones, in place.

        Runs in one store transaction: the primary is written and the other
        layers deleted together.  Incoming layers always end up stored,
        merged or not; layers marked ``separate`` are stored as they are and
        never merged.

        Returns:
            The outcome, or ``None`` when there is nothing to merge.
        """
        incoming = list(incoming)
        kept = [layer for layer in incoming if layer.separate]
        kept_ids = {layer.id for layer in kept}
        with store.transaction():
            for layer in kept:
                store.put(EntityType.ANNOTATION, layer.to_record())
            layers = [
                layer
                for layer in (
                    Annotation.from_record(record)
                    for record in store.query(
                        EntityType.ANNOTATION,
                        fileId=file_id,
                        memberId=member_id,
                        pageNumber=page_number,
                    )
                )
                if not layer.separate and layer.id not in kept_ids
            ]
            layers.extend(layer for layer in incoming if not layer.separate)
            if not layers:
                return None
            outcome = self.merge(layers)
            record = outcome.primary.to_record()
            if outcome.changed:
                store.put(EntityType.ANNOTATION, record)
                for layer_id in outcome.deleted_layer_ids:
                    store.delete(EntityType.ANNOTATION, layer_id)
            elif store.get(EntityType.ANNOTATION, outcome.primary.id) is None:
                store.put(EntityType.ANNOTATION, record)
            return outcome

    def separate(self, store: LocalStore, incoming: Annotation) -> Annotation:
        """Store *incoming* as its own layer, marked ``separate``.

        A layer whose id is already used locally is stored under a fresh id.
        """
        with store.transaction():
            update = {"separate": True}
            if store.get(EntityType.ANNOTATION, incoming.id) is not None:
                update["id"] = self._id_factory()
            layer = incoming.model_copy(update=update)
            if layer.id != incoming.id:
                logger.info(
                    "Keeping remote layer %s separate as %s", incoming.id, layer.id
                )
            store.put(EntityType.ANNOTATION, layer.to_record())
            return layer
