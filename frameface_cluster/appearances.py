"""
Character appearance statistics derived from identity clusters.

Each reported cluster is treated as one character.  Appearances are tallied
per episode and per character, and a character seen in at least
``MAIN_CHARACTER_SIZE`` frames counts as a main character.  Clusters are
also bucketed by size (large, medium, small) to flag identities that may need
manual review.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .clustering import ClusterStats, ClusterSummary
from .config import MAIN_CHARACTER_SIZE, LARGE_CLUSTER_SIZE, MEDIUM_CLUSTER_SIZE


@dataclass
class EpisodeAppearances:
    total_appearances: int = 0
    characters: int = 0
    main_characters: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalAppearances": self.total_appearances,
            "characters": self.characters,
            "mainCharacters": self.main_characters,
        }


@dataclass
class CharacterAppearances:
    """Appearances of one cluster.

    ``cluster`` is the 1-based position of the cluster in the clustering
    output, so crops written for it can be found again.
    """
    cluster: int
    total_appearances: int
    episodes: Dict[str, int]
    is_main_character: bool

    @property
    def episode_count(self) -> int:
        return len(self.episodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster,
            "totalAppearances": self.total_appearances,
            "episodeCount": self.episode_count,
            "episodes": dict(sorted(self.episodes.items())),
            "isMainCharacter": self.is_main_character,
        }


@dataclass
class AppearanceReport:
    episodes: Dict[str, EpisodeAppearances] = field(default_factory=dict)
    characters: List[CharacterAppearances] = field(default_factory=list)

    @property
    def main_characters(self) -> List[CharacterAppearances]:
        return [c for c in self.characters if c.is_main_character]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "episodes": {name: stats.to_dict() for name, stats in self.episodes.items()},
            "totalCharacters": len(self.characters),
            "mainCharacters": len(self.main_characters),
            "characters": [c.to_dict() for c in self.characters],
        }


def episode_appearances(stats: ClusterStats,
                        main_character_size: int = MAIN_CHARACTER_SIZE) -> AppearanceReport:
    """Tally appearances per episode and per character.

    Parameters
    ----------
    stats: ClusterStats
        Output of the clustering engine.
    main_character_size: int
        Minimum cluster size of a main character.

    Returns
    -------
    AppearanceReport
        Episodes sorted by name; characters sorted by descending
        appearances, ties keeping cluster order.
    """
    episodes: Dict[str, EpisodeAppearances] = {}
    characters: List[CharacterAppearances] = []
    for idx, cluster in enumerate(stats.clusters, start=1):
        character = CharacterAppearances(
            cluster=idx,
            total_appearances=cluster.size,
            episodes=dict(cluster.episodes),
            is_main_character=cluster.size >= main_character_size,
        )
        characters.append(character)
        for episode, count in cluster.episodes.items():
            tally = episodes.setdefault(episode, EpisodeAppearances())
            tally.total_appearances += count
            tally.characters += 1
            if character.is_main_character:
                tally.main_characters += 1
    characters.sort(key=lambda c: -c.total_appearances)
    return AppearanceReport(episodes=dict(sorted(episodes.items())), characters=characters)


def size_groups(stats: ClusterStats) -> Dict[str, List[ClusterSummary]]:
    """Bucket clusters into ``large`` (more than 5 faces), ``medium`` (3-5) and ``small``."""
    groups: Dict[str, List[ClusterSummary]] = {"large": [], "medium": [], "small": []}
    for cluster in stats.clusters:
        if cluster.size > LARGE_CLUSTER_SIZE:
            groups["large"].append(cluster)
        elif cluster.size >= MEDIUM_CLUSTER_SIZE:
            groups["medium"].append(cluster)
        else:
            groups["small"].append(cluster)
    return groups
