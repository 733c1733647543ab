# kerasgraph/errors.py

from __future__ import annotations

from typing import Optional


class KerasGraphError(Exception):
    """Base class for errors raised while importing or building a graph."""


class ConfigurationError(KerasGraphError, ValueError):
    """
    A model or layer configuration is malformed: a required field is missing,
    a class name is not recognised, or a value has the wrong type.
    """


class UnsupportedTopologyError(KerasGraphError, ValueError):
    """
    A forward reference (a cycle relative to declaration order) involves only
    nodes that cannot be cloned to break it.
    """

    def __init__(self, node: str, reference: str) -> None:
        super().__init__(
            f"Node {node!r} references later node {reference!r}, but neither is "
            "loop-capable; only Lambda-style nodes can be split to break a cycle."
        )
        self.node = node
        self.reference = reference


class ShapeInferenceError(KerasGraphError, ValueError):
    """
    Output-type inference failed for a node (conflicting or unresolvable
    inbound shapes).
    """

    def __init__(self, message: str, node: Optional[str] = None) -> None:
        if node is not None:
            message = f"{node}: {message}"
        super().__init__(message)
        self.node = node
