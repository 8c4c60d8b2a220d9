from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional
import logging

from .protocol import Handler, error

logger = logging.getLogger(__name__)

SKILLS = ("farming", "fishing", "foraging", "mining", "combat")

WORLD_NOT_READY = error("world_not_ready")


@dataclass(frozen=True)
class PlayerSnapshot:
    name: str
    money: int = 0
    health: int = 100
    max_health: int = 100
    stamina: float = 270
    max_stamina: int = 270
    levels: Mapping[str, int] = field(default_factory=dict)

    def level(self, skill: str) -> int:
        return self.levels.get(skill, 0)


@dataclass(frozen=True)
class WorldSnapshot:
    time_of_day: int
    player: PlayerSnapshot


class WorldState:
    """ Holds the latest snapshot published by the host.

        Snapshots are immutable and replaced wholesale, so readers on any
        connection always see a consistent view without locking.
    """

    def __init__(self, snapshot: Optional[WorldSnapshot] = None) -> None:
        self._snapshot = snapshot

    def __call__(self) -> Optional[WorldSnapshot]:
        return self._snapshot

    @property
    def ready(self) -> bool:
        return self._snapshot is not None

    def update(self, snapshot: WorldSnapshot) -> None:
        logger.debug(f"World snapshot updated: {snapshot}")
        self._snapshot = snapshot

    def clear(self) -> None:
        logger.debug("World snapshot cleared.")
        self._snapshot = None


class WorldInfo:
    """ Answers INFO queries from a snapshot source.

        ``source`` returns the current WorldSnapshot, or None while the
        world is not loaded, in which case every query answers
        ``error:world_not_ready``.
    """

    def __init__(self, source: Callable[[], Optional[WorldSnapshot]]) -> None:
        self.source = source

    def handlers(self) -> Dict[str, Handler]:
        """ INFO registry keyed by uppercased info type. """
        table = {
            "TIME": self.time,
            "MONEY": self.money,
            "NAME": self.name,
            "LEVEL": self.level,
            "HEALTH": self.health,
            "ENERGY": self.energy,
        }
        for skill in SKILLS:
            table[f"LEVEL:{skill.upper()}"] = self.level
        return table

    def _require(self) -> Optional[WorldSnapshot]:
        snapshot = self.source()
        if snapshot is None:
            logger.debug("INFO requested before the world was ready.")
        return snapshot

    def time(self, key: str = "TIME") -> str:
        snapshot = self._require()
        if snapshot is None:
            return WORLD_NOT_READY
        return f"time:{snapshot.time_of_day}"

    def money(self, key: str = "MONEY") -> str:
        snapshot = self._require()
        if snapshot is None:
            return WORLD_NOT_READY
        return f"money:{snapshot.player.money}"

    def name(self, key: str = "NAME") -> str:
        snapshot = self._require()
        if snapshot is None:
            return WORLD_NOT_READY
        return f"name:{snapshot.player.name}"

    def level(self, key: str = "LEVEL") -> str:
        """ LEVEL lists every skill, LEVEL:<SKILL> just the one. """
        snapshot = self._require()
        if snapshot is None:
            return WORLD_NOT_READY

        player = snapshot.player
        _, _, skill = key.partition(":")
        skill = skill.strip().lower()
        if not skill:
            return "level:" + ",".join(f"{s}:{player.level(s)}" for s in SKILLS)
        if skill not in SKILLS:
            return error("unknown_skill")
        return f"level:{skill}:{player.level(skill)}"

    def health(self, key: str = "HEALTH") -> str:
        snapshot = self._require()
        if snapshot is None:
            return WORLD_NOT_READY
        return f"health:{snapshot.player.health}/{snapshot.player.max_health}"

    def energy(self, key: str = "ENERGY") -> str:
        snapshot = self._require()
        if snapshot is None:
            return WORLD_NOT_READY
        # stamina is fractional in-game; whole values print without ".0"
        return f"energy:{snapshot.player.stamina:g}/{snapshot.player.max_stamina}"
