import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils.validation import check_is_fitted

from .bdl import BDL
from .config import BDLParameters, Mode
from .core.distributions import Gaussian
from .marginals import Marginals, create_priors


class BDLEstimator(BaseEstimator, TransformerMixin):
    """
    scikit-learn facade over ``BDL``.

    Rows of ``X`` are signals. ``fit`` learns the dictionary, ``transform``
    returns coefficient posterior means for a fixed dictionary and
    ``inverse_transform`` returns reconstructed signal means.
    """

    def __init__(self, n_components=8, sparse=True, norm_constraints=False, include_bias=False,
                 non_negative=False, max_iter=100, tol=1e-3, seed=0):
        self.n_components = n_components
        self.sparse = sparse
        self.norm_constraints = norm_constraints
        self.include_bias = include_bias
        self.non_negative = non_negative
        self.max_iter = max_iter
        self.tol = tol
        self.seed = seed

    def _parameters(self, mode, missing_data=False):
        return BDLParameters(
            mode=mode,
            sparse=self.sparse,
            norm_constraints=self.norm_constraints,
            include_bias=self.include_bias,
            non_negative=self.non_negative,
            missing_data=missing_data,
            tolerance=self.tol,
            max_iterations={m: self.max_iter for m in Mode},
            show_progress=False,
            seed=self.seed,
        )

    def fit(self, X, y=None):
        X = np.asarray(X, dtype=float)
        priors = create_priors(self.n_components, X.shape[1], rng=np.random.default_rng(self.seed))
        model = BDL(self._parameters(Mode.TRAIN, missing_data=bool(np.isnan(X).any())))
        self.posteriors_ = model.train(priors, X)
        self.components_ = np.array(self.posteriors_.dictionary.mean)
        self.noise_precision_ = float(self.posteriors_.noise_precision.mean)
        self.evidence_ = float(self.posteriors_.evidence.log_odds)
        self.n_iter_ = self.posteriors_.monitor.iterations
        return self

    def transform(self, X):
        check_is_fitted(self, "posteriors_")
        X = np.asarray(X, dtype=float)
        model = BDL(self._parameters(Mode.TRAIN_FIXED, missing_data=bool(np.isnan(X).any())))
        return np.array(model.train(self.posteriors_, X).coefficients.mean)

    def inverse_transform(self, A):
        check_is_fitted(self, "posteriors_")
        priors = Marginals(
            coefficients=Gaussian.point_mass(np.asarray(A, dtype=float)),
            dictionary=self.posteriors_.dictionary,
            noise_precision=self.posteriors_.noise_precision,
            bias=self.posteriors_.bias,
        )
        model = BDL(self._parameters(Mode.RECONSTRUCT))
        return np.array(model.reconstruct(priors).signals.mean)
