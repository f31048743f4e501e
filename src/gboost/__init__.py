"""
Gradient boosted decision trees with cached incremental training.

Second-order gradient boosting over classification, regression and
multivariate regression problems, trained one iteration at a time with an
incrementally updated prediction cache, checkpointable mid-training, and
exported as linked, compact or QuickScorer models.
"""

from .boosting import GradientBoost, TrainingState
from .estimators import GradientBoostingClassifier, GradientBoostingRegressor
from .model import GradientBoostModel
from .params import GradientBoostParams, LossFunction, Representation, TreeBuilder
from .problems import ClassificationProblem, MultivariateRegressionProblem, RegressionProblem
from .quick_scorer import QuickScorerModel

__version__ = "0.1.0"
__all__ = [
    "GradientBoost",
    "TrainingState",
    "GradientBoostParams",
    "LossFunction",
    "TreeBuilder",
    "Representation",
    "ClassificationProblem",
    "RegressionProblem",
    "MultivariateRegressionProblem",
    "GradientBoostModel",
    "QuickScorerModel",
    "GradientBoostingRegressor",
    "GradientBoostingClassifier",
]
