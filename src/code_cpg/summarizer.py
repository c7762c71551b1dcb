#!/usr/bin/env python3
"""
summarizer.py

Purpose annotation for graph nodes.

A *summarizer* turns a small node descriptor into a one-line natural
language purpose.  The :class:`PurposeAnnotator` runs a summarizer over the
``FUNCTION`` nodes of a version in small concurrent batches with a pause
between batches, writing the result back through the store.

Annotation is advisory: a summarizer failure leaves ``purpose`` empty and is
only logged.

Author: Eric G. Suchanek, PhD
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from code_cpg.models import GraphNode, NodeQuery, NodeType
from code_cpg.store import GraphStore

logger = logging.getLogger(__name__)


class Summarizer(Protocol):
    """Produces a purpose string from a node descriptor."""

    def purpose(self, descriptor: dict) -> str: ...


def node_descriptor(node: GraphNode) -> dict:
    """
    Build the descriptor handed to a :class:`Summarizer`.

    :param node: Function node.
    :return: dict with ``content``, ``node_type``, ``function_name``,
             ``parameters``, ``language`` and ``docstring``.
    """
    return {
        "content": node.signature or "",
        "node_type": node.node_type.value.lower(),
        "function_name": node.name,
        "parameters": [p.name for p in node.parameters],
        "language": node.language,
        "docstring": node.docstring,
    }


_WORD_RE = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")


class DocstringSummarizer:
    """
    Offline summarizer.

    Uses the first sentence of the docstring when there is one, otherwise
    spells out the identifier (``parseFile`` / ``parse_file`` -> ``Parse file``).
    """

    def purpose(self, descriptor: dict) -> str:
        doc = (descriptor.get("docstring") or "").strip()
        if doc:
            first = doc.split("\n\n", 1)[0].replace("\n", " ")
            return first.split(". ", 1)[0].rstrip(".") + "."
        words = _WORD_RE.findall(descriptor.get("function_name") or "")
        if not words:
            return ""
        phrase = " ".join(w.lower() for w in words)
        return phrase[0].upper() + phrase[1:] + "."


class PurposeAnnotator:
    """
    Batched, rate-limited purpose annotation.

    :param store: Graph store to read nodes from and write purposes to.
    :param summarizer: Purpose generator.
    :param batch_size: Nodes summarised concurrently per batch.
    :param rate_limit_seconds: Pause between consecutive batches.
    :param max_nodes: Upper bound on nodes annotated per pass.
    :param sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        store: GraphStore,
        summarizer: Summarizer,
        *,
        batch_size: int = 5,
        rate_limit_seconds: float = 1.0,
        max_nodes: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.summarizer = summarizer
        self.batch_size = batch_size
        self.rate_limit_seconds = rate_limit_seconds
        self.max_nodes = max_nodes
        self._sleep = sleep

    def annotate_version(self, project_id: str, version_id: str) -> int:
        """
        Annotate the version's function nodes that have no purpose yet.

        :return: Number of nodes that received a purpose.
        """
        nodes = [
            n
            for n in self.store.query_nodes(
                NodeQuery(
                    project_id=project_id,
                    version_id=version_id,
                    node_type=NodeType.FUNCTION,
                    limit=self.max_nodes,
                )
            ).data
            if not n.purpose
        ]
        logger.info("generating purposes for %d functions", len(nodes))

        annotated = 0
        with ThreadPoolExecutor(max_workers=self.batch_size) as pool:
            for start in range(0, len(nodes), self.batch_size):
                batch = nodes[start : start + self.batch_size]
                annotated += sum(pool.map(self._annotate_one, batch))
                if start + self.batch_size < len(nodes):
                    self._sleep(self.rate_limit_seconds)

        logger.info("purpose generation completed: %d/%d", annotated, len(nodes))
        return annotated

    def start(self, project_id: str, version_id: str) -> threading.Thread:
        """Run :meth:`annotate_version` on a daemon thread and return it."""
        thread = threading.Thread(
            target=self.run,
            args=(project_id, version_id),
            name=f"purpose-{version_id[:8]}",
            daemon=True,
        )
        thread.start()
        return thread

    def run(self, project_id: str, version_id: str) -> None:
        """Annotate the version, logging (never raising) any failure."""
        try:
            self.annotate_version(project_id, version_id)
        except Exception:
            logger.exception("purpose annotation pass failed for version %s", version_id)

    def _annotate_one(self, node: GraphNode) -> bool:
        try:
            purpose = self.summarizer.purpose(node_descriptor(node))
            if not purpose:
                return False
            self.store.update_node(node.id, {"purpose": purpose})
        except Exception as exc:
            logger.warning("failed to generate purpose for %s: %s", node.name, exc)
            return False
        return True
