from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Literal

from flowgate.models import Finding

HumanDecision = Literal["confirmed", "skipped", "pending"]


class ContentGenerator(ABC):
    @abstractmethod
    async def generate(self, artifact: str, goals: list[str], target: Path) -> None:
        """Write the named artifact for ``goals`` to ``target``."""


class Fixer(ABC):
    @abstractmethod
    async def fix(self, finding: Finding, strategy: str) -> bool:
        """Repair ``finding`` by mutating only ``finding.artifact``; report success."""


class HumanGate(ABC):
    @abstractmethod
    def decide(self, gate: str, criteria: list[str]) -> HumanDecision:
        """Ask the operator whether ``gate`` may be passed."""
