"""HMM topologies and the transition model."""

from .topology import HmmState, HmmTopology
from .transition_model import TransitionModel
