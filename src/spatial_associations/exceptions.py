"""
Spatial association exception hierarchy.

All exceptions inherit from ``SpatialAssociationError`` and provide
``to_dict()`` for API-friendly error responses. None of them is retried:
each is a deterministic function of the declaration or call that raised it.
"""

from __future__ import annotations

from difflib import get_close_matches
from typing import Any


class SpatialAssociationError(Exception):
    """Base exception for all spatial association errors."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": str(self),
        }


class ConfigurationError(SpatialAssociationError):
    """A geometry descriptor or association option cannot be used."""

    def __init__(self, message: str, option: str | None = None) -> None:
        self.message = message
        self.option = option
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "CONFIGURATION_ERROR",
            "message": self.message,
            "option": self.option,
        }


class InvalidRelationshipError(ConfigurationError):
    """
    Spatial relationship outside the supported whitelist.

    Provides fuzzy-matched suggestions for likely intended relationships.
    """

    def __init__(self, relationship: object, valid_relationships: list[str]) -> None:
        self.relationship = relationship
        self.valid_relationships = sorted(valid_relationships)
        self.suggestions = get_close_matches(
            str(relationship), self.valid_relationships, n=3, cutoff=0.6
        )

        message = f'Invalid spatial relationship "{relationship}".'
        if self.suggestions:
            message += f" Did you mean: {', '.join(self.suggestions)}?"
        message += f" Expected one of: {', '.join(self.valid_relationships)}"
        super().__init__(message, option="relationship")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "INVALID_RELATIONSHIP",
            "relationship": str(self.relationship),
            "suggestions": self.suggestions,
            "valid_relationships": self.valid_relationships,
        }


class ChainResolutionError(SpatialAssociationError):
    """
    Structurally broken association chain.

    Indicates a declaration bug (unreachable hop, ambiguous join), never a
    runtime data problem.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        self.message = message
        self.position = position
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "CHAIN_RESOLUTION_ERROR",
            "message": self.message,
            "position": self.position,
        }


class EmptyBatchError(SpatialAssociationError):
    """Batch preload requested without any owner identifiers."""

    def __init__(self, association: str | None = None) -> None:
        self.association = association
        target = f" for '{association}'" if association else ""
        super().__init__(f"Cannot build a batch preload query{target}: no owner ids")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "EMPTY_BATCH",
            "association": self.association,
        }


__all__: list[str] = [
    "ChainResolutionError",
    "ConfigurationError",
    "EmptyBatchError",
    "InvalidRelationshipError",
    "SpatialAssociationError",
]
