# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Ports to the systems that own units, rosters and the catalog.

The KPI engine never stores who owns a unit, which learners belong to an
institution or what a unit is called; it asks these collaborators. Real
deployments provide adapters over their own stores; InMemoryDirectory
implements every port for tests and local runs.
"""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class UnitOwner:
    """Learner a unit belongs to, and the subject it is filed under."""

    learner_id: str
    subject_id: str | None = None


@dataclass(frozen=True)
class UnitInfo:
    """Catalog data of a learning unit."""

    title: str = ""
    subject_id: str | None = None
    concept_count: int = 0


@runtime_checkable
class UnitDirectory(Protocol):
    """Resolves the owner of a learning unit."""

    async def owner_of(self, unit_id: str) -> UnitOwner | None:
        """Owner of a unit, or None when the unit is unknown."""
        ...


@runtime_checkable
class RosterDirectory(Protocol):
    """Institution membership and learner identity."""

    async def roster(self, institution_id: str) -> list[str]:
        """Learner ids enrolled in an institution."""
        ...

    async def institution_of(self, learner_id: str) -> str | None:
        """Institution of a learner, None for independent learners."""
        ...

    async def display_name(self, learner_id: str) -> str:
        """Name shown in ranking tables."""
        ...

    async def learner_type(self, learner_id: str) -> str:
        """Account type (free, pro, school-student, school-teacher)."""
        ...


@runtime_checkable
class Catalog(Protocol):
    """Names and structure of units and subjects."""

    async def unit_info(self, unit_id: str) -> UnitInfo:
        ...

    async def subject_name(self, subject_id: str) -> str:
        ...


@dataclass
class InMemoryDirectory:
    """Dictionary-backed implementation of every directory port.

    Example:
        directory = InMemoryDirectory()
        directory.add_learner("ana", institution_id="school-1", name="Ana")
        directory.add_unit("nb-1", owner="ana", subject_id="math", title="Algebra")
    """

    owners: dict[str, UnitOwner] = field(default_factory=dict)
    units: dict[str, UnitInfo] = field(default_factory=dict)
    subjects: dict[str, str] = field(default_factory=dict)
    institutions: dict[str, str] = field(default_factory=dict)
    names: dict[str, str] = field(default_factory=dict)
    types: dict[str, str] = field(default_factory=dict)

    def add_learner(
        self,
        learner_id: str,
        institution_id: str | None = None,
        name: str | None = None,
        learner_type: str | None = None,
    ) -> None:
        if institution_id is not None:
            self.institutions[learner_id] = institution_id
        self.names[learner_id] = name or learner_id
        self.types[learner_id] = learner_type or (
            "school-student" if institution_id is not None else "free"
        )

    def add_unit(
        self,
        unit_id: str,
        owner: str,
        subject_id: str | None = None,
        title: str = "",
        concept_count: int = 0,
    ) -> None:
        self.owners[unit_id] = UnitOwner(learner_id=owner, subject_id=subject_id)
        self.units[unit_id] = UnitInfo(title=title, subject_id=subject_id, concept_count=concept_count)

    def add_subject(self, subject_id: str, name: str) -> None:
        self.subjects[subject_id] = name

    async def owner_of(self, unit_id: str) -> UnitOwner | None:
        return self.owners.get(unit_id)

    async def roster(self, institution_id: str) -> list[str]:
        return sorted(
            learner_id
            for learner_id, institution in self.institutions.items()
            if institution == institution_id
        )

    async def institution_of(self, learner_id: str) -> str | None:
        return self.institutions.get(learner_id)

    async def display_name(self, learner_id: str) -> str:
        return self.names.get(learner_id, learner_id)

    async def learner_type(self, learner_id: str) -> str:
        return self.types.get(learner_id, "free")

    async def unit_info(self, unit_id: str) -> UnitInfo:
        return self.units.get(unit_id, UnitInfo())

    async def subject_name(self, subject_id: str) -> str:
        return self.subjects.get(subject_id, "")
