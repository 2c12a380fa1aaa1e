"""
Association hypotheses and exclusive data associations.

This module provides:
1. HypothesisType - Clutter / existing target / newborn tag
2. AssociationHypothesis - Hypothesis for a single observation
3. DataAssociation - Exclusive mapping from target IDs to observation indices
"""

from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence


class HypothesisType(Enum):
    CLUTTER = 0
    EXISTING = 1
    NEWBORN = 2


class AssociationHypothesis(NamedTuple):
    """
    Hypothesis for one observation.

    The categorical column layout used by the samplers is
    [clutter, target_0, ..., target_{N-1}, newborn].
    """
    kind: HypothesisType
    target: Optional[int] = None

    @classmethod
    def clutter(cls) -> 'AssociationHypothesis':
        return cls(HypothesisType.CLUTTER)

    @classmethod
    def existing(cls, target: int) -> 'AssociationHypothesis':
        return cls(HypothesisType.EXISTING, int(target))

    @classmethod
    def newborn(cls) -> 'AssociationHypothesis':
        return cls(HypothesisType.NEWBORN)

    @classmethod
    def from_column(cls, column: int, n_targets: int) -> 'AssociationHypothesis':
        """Hypothesis for a column of the categorical layout."""
        if column == 0:
            return cls.clutter()
        if 1 <= column <= n_targets:
            return cls.existing(column - 1)
        if column == n_targets + 1:
            return cls.newborn()
        raise ValueError(f"Column {column} out of range for {n_targets} targets")

    def column(self, n_targets: int) -> int:
        """Column of this hypothesis in the categorical layout."""
        if self.kind is HypothesisType.CLUTTER:
            return 0
        if self.kind is HypothesisType.EXISTING:
            return self.target + 1
        return n_targets + 1


class DataAssociation:
    """
    Exclusive data association.

    Each target ID is associated to at most one observation and each
    observation to at most one target ID. IDs of newborn targets are
    flagged so that existing and newborn associations can be told apart.
    Observations without an entry are clutter.
    """

    def __init__(self):
        self._obs_to_target: Dict[int, int] = {}
        self._target_to_obs: Dict[int, int] = {}
        self._newborn_ids = set()

    def set_association(self, target_id: int, observation: int, newborn: bool = False):
        """
        Associate a target ID with an observation.

        Args:
            target_id: Existing target ID or minted newborn ID
            observation: Observation index
            newborn: True if target_id was minted for a newborn target
        """
        target_id = int(target_id)
        observation = int(observation)
        if target_id in self._target_to_obs and self._target_to_obs[target_id] != observation:
            raise ValueError(f"Cannot associate target {target_id} and observation {observation}. "
                             f"Target was associated before.")
        if observation in self._obs_to_target:
            raise ValueError(f"Cannot associate target {target_id} and observation {observation}. "
                             f"Observation is already associated to target "
                             f"{self._obs_to_target[observation]}.")

        self._obs_to_target[observation] = target_id
        self._target_to_obs[target_id] = observation
        if newborn:
            self._newborn_ids.add(target_id)

    def unset_association(self, target_id: int, observation: int):
        """Remove an existing association."""
        if self._obs_to_target.get(observation) != target_id:
            raise ValueError(f"Target {target_id} and observation {observation} are not associated")
        del self._obs_to_target[observation]
        del self._target_to_obs[target_id]
        self._newborn_ids.discard(target_id)

    def are_associated(self, target_id: int, observation: int) -> bool:
        return self._obs_to_target.get(observation) == target_id

    def target_of(self, observation: int) -> Optional[int]:
        """Target ID associated with an observation (None = clutter)."""
        return self._obs_to_target.get(observation)

    def observation_of(self, target_id: int) -> Optional[int]:
        """Observation associated with a target ID (None = not detected)."""
        return self._target_to_obs.get(target_id)

    def is_newborn(self, target_id: int) -> bool:
        return target_id in self._newborn_ids

    @property
    def targets(self) -> Dict[int, int]:
        """Copy of the mapping target ID -> observation index."""
        return dict(self._target_to_obs)

    @property
    def newborn_ids(self) -> List[int]:
        return sorted(self._newborn_ids)

    @property
    def existing_ids(self) -> List[int]:
        return sorted(t for t in self._target_to_obs if t not in self._newborn_ids)

    @property
    def n_existing(self) -> int:
        return len(self._target_to_obs) - len(self._newborn_ids)

    @property
    def n_newborn(self) -> int:
        return len(self._newborn_ids)

    def max_target_id(self) -> int:
        """Largest associated ID, -1 if the association is empty."""
        return max(self._target_to_obs) if self._target_to_obs else -1

    def clutter_observations(self, n_observations: int) -> List[int]:
        return [m for m in range(n_observations) if m not in self._obs_to_target]

    def hypotheses(self, target_ids: Sequence[int], n_observations: int) -> List[AssociationHypothesis]:
        """
        Per-observation hypotheses relative to an ordered set of existing targets.

        IDs that are neither flagged newborn nor found in target_ids are
        treated as newborn.

        Args:
            target_ids: IDs of the existing targets in index order
            n_observations: Number of observations

        Returns:
            List of AssociationHypothesis, one per observation
        """
        index_of = {int(t): n for n, t in enumerate(target_ids)}
        result = []
        for m in range(n_observations):
            target_id = self._obs_to_target.get(m)
            if target_id is None:
                result.append(AssociationHypothesis.clutter())
            elif target_id in index_of and target_id not in self._newborn_ids:
                result.append(AssociationHypothesis.existing(index_of[target_id]))
            else:
                result.append(AssociationHypothesis.newborn())
        return result

    def to_columns(self, target_ids: Sequence[int], n_observations: int) -> tuple:
        """Per-observation columns of the categorical layout."""
        n_targets = len(target_ids)
        return tuple(h.column(n_targets) for h in self.hypotheses(target_ids, n_observations))

    def __len__(self) -> int:
        return len(self._obs_to_target)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DataAssociation):
            return NotImplemented
        return (self._obs_to_target == other._obs_to_target
                and self._newborn_ids == other._newborn_ids)

    __hash__ = None

    def __str__(self) -> str:
        pairs = " ".join(f"{m}->{t}" for m, t in sorted(self._obs_to_target.items()))
        return f"Obs->Target: {pairs}"

    def __repr__(self) -> str:
        return f"DataAssociation({dict(sorted(self._obs_to_target.items()))})"
