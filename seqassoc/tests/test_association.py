"""Tests for association hypotheses and DataAssociation."""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import pytest
from seqassoc.association import AssociationHypothesis, DataAssociation, HypothesisType


class TestAssociationHypothesis:
    """Tests for AssociationHypothesis."""

    def test_columns(self):
        """Test categorical column layout."""
        assert AssociationHypothesis.clutter().column(3) == 0
        assert AssociationHypothesis.existing(0).column(3) == 1
        assert AssociationHypothesis.existing(2).column(3) == 3
        assert AssociationHypothesis.newborn().column(3) == 4

    def test_from_column(self):
        """Test columns map back to hypotheses."""
        assert AssociationHypothesis.from_column(0, 2).kind is HypothesisType.CLUTTER
        assert AssociationHypothesis.from_column(2, 2) == AssociationHypothesis.existing(1)
        assert AssociationHypothesis.from_column(3, 2).kind is HypothesisType.NEWBORN

    def test_from_column_out_of_range(self):
        """Test invalid columns raise."""
        with pytest.raises(ValueError):
            AssociationHypothesis.from_column(4, 2)


class TestDataAssociation:
    """Tests for DataAssociation."""

    def test_set_and_query(self):
        """Test basic association queries."""
        x = DataAssociation()
        x.set_association(10, 0)
        x.set_association(3, 2, newborn=True)

        assert x.are_associated(10, 0)
        assert not x.are_associated(10, 2)
        assert x.target_of(0) == 10
        assert x.target_of(1) is None
        assert x.observation_of(3) == 2
        assert x.observation_of(20) is None
        assert x.is_newborn(3) and not x.is_newborn(10)
        assert x.targets == {10: 0, 3: 2}
        assert x.existing_ids == [10]
        assert x.newborn_ids == [3]
        assert x.n_existing == 1 and x.n_newborn == 1
        assert x.max_target_id() == 10
        assert x.clutter_observations(3) == [1]
        assert len(x) == 2

    def test_target_conflict_raises(self):
        """Test a target cannot be associated with two observations."""
        x = DataAssociation()
        x.set_association(1, 0)
        with pytest.raises(ValueError, match="Target was associated before"):
            x.set_association(1, 1)

    def test_observation_conflict_raises(self):
        """Test an observation cannot be associated with two targets."""
        x = DataAssociation()
        x.set_association(1, 0)
        with pytest.raises(ValueError, match="already associated"):
            x.set_association(2, 0)

    def test_setting_same_pair_twice_raises(self):
        """Test re-associating an identical pair is a conflict on the observation."""
        x = DataAssociation()
        x.set_association(1, 0)
        with pytest.raises(ValueError):
            x.set_association(1, 0)

    def test_unset(self):
        """Test removing an association."""
        x = DataAssociation()
        x.set_association(5, 1, newborn=True)
        x.unset_association(5, 1)
        assert len(x) == 0
        assert x.newborn_ids == []
        with pytest.raises(ValueError):
            x.unset_association(5, 1)

    def test_empty(self):
        """Test an empty association."""
        x = DataAssociation()
        assert x.max_target_id() == -1
        assert x.clutter_observations(2) == [0, 1]
        assert str(x) == "Obs->Target: "

    def test_hypotheses_and_columns(self):
        """Test per-observation hypotheses relative to the existing targets."""
        x = DataAssociation()
        x.set_association(20, 0)
        x.set_association(7, 2, newborn=True)
        x.set_association(99, 3)

        hypotheses = x.hypotheses([10, 20], 5)
        assert hypotheses[0] == AssociationHypothesis.existing(1)
        assert hypotheses[1] == AssociationHypothesis.clutter()
        assert hypotheses[2] == AssociationHypothesis.newborn()
        # Unknown IDs count as newborn
        assert hypotheses[3] == AssociationHypothesis.newborn()
        assert x.to_columns([10, 20], 5) == (2, 0, 3, 3, 0)

    def test_equality(self):
        """Test associations compare by content."""
        a, b = DataAssociation(), DataAssociation()
        a.set_association(1, 0)
        b.set_association(1, 0)
        assert a == b
        b.set_association(2, 1, newborn=True)
        assert a != b

    def test_string(self):
        """Test string form lists observation to target pairs."""
        x = DataAssociation()
        x.set_association(4, 1)
        x.set_association(2, 0)
        assert str(x) == "Obs->Target: 0->2 1->4"
