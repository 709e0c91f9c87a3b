from .__about__ import __version__

from .config import BDLParameters, Mode, default_convergence_criterion, make_metadata
from .core.distributions import Bernoulli, Gamma, Gaussian
from .exceptions import BDLError, InvalidArgument, InvalidParameter, NotConverged, NumericalInstability
from .model import ModelDefinition
from .inference import InferenceMonitor, InferenceState, IterationDriver, VariationalEngine
from .marginals import Marginals, create_hyper_priors, create_priors, reconstruction_error
from .bdl import BDL
from .progress import ConvergenceResults, JsonProgressLogger, ReconstructionProgressHandler
from .online import OnlineBDL
from .sklearn_estimator import BDLEstimator

__all__ = [
    "__version__",

    # Model and configuration
    "BDL",
    "BDLParameters",
    "Mode",
    "ModelDefinition",
    "default_convergence_criterion",
    "make_metadata",

    # Distributions and results
    "Gaussian", "Gamma", "Bernoulli",
    "Marginals", "create_priors", "create_hyper_priors", "reconstruction_error",

    # Inference loop
    "VariationalEngine", "IterationDriver", "InferenceMonitor", "InferenceState",

    # Progress reporting
    "ConvergenceResults", "ReconstructionProgressHandler", "JsonProgressLogger",

    # Online and scikit-learn front ends
    "OnlineBDL", "BDLEstimator",

    # Errors
    "BDLError", "InvalidArgument", "InvalidParameter", "NumericalInstability", "NotConverged",
]
