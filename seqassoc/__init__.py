"""
Sequential sampling of data associations for multi-target tracking.

Modules:
- numerics: log-domain helpers and categorical sampling
- association: hypotheses and association records
- models: generative association model, targets, observations, likelihoods
- samplers: sequential association sampler
- lookahead: sampler with lookahead over neighboring observations
- experiments: benchmark, metric and comparison helpers
"""

from .association import AssociationHypothesis, DataAssociation, HypothesisType
from .lookahead import NeighborLookaheadSampler, ProbabilityTree, neighbor_windows
from .models import (
    ConstructionError,
    GaussianLikelihoodModel,
    GenerativeAssociationModel,
    LikelihoodModel,
    ObservationSet,
    TabularLikelihoodModel,
    TargetSet
)
from .samplers import SequentialAssociationSampler

__version__ = "0.1.0"
