from . import utils as utils
from ._error_terms import ErrorTerm as ErrorTerm
from ._errors import CalibrationError as CalibrationError
from ._errors import NumericalFailure as NumericalFailure
from ._errors import StructuralError as StructuralError
from ._estimator import EstimatorConfig as EstimatorConfig
from ._estimator import EstimatorState as EstimatorState
from ._estimator import IncrementalEstimator as IncrementalEstimator
from ._estimator import make_linear_solver as make_linear_solver
from ._factorization import FactorizationConfig as FactorizationConfig
from ._factorization import FactorizationContext as FactorizationContext
from ._factorization import FactorizationResult as FactorizationResult
from ._factorization import RankRevealingFactorizer as RankRevealingFactorizer
from ._lie_group_variables import se2_variable as se2_variable
from ._lie_group_variables import se3_variable as se3_variable
from ._lie_group_variables import so2_variable as so2_variable
from ._lie_group_variables import so3_variable as so3_variable
from ._linear_solver import CholeskyLinearSolver as CholeskyLinearSolver
from ._linear_solver import LinearSolver as LinearSolver
from ._linear_solver import QrLinearSolver as QrLinearSolver
from ._results import BatchResult as BatchResult
from ._results import CalibrationResult as CalibrationResult
from ._results import ErrorStatistics as ErrorStatistics
from ._robust import RobustWeightingConfig as RobustWeightingConfig
from ._robust import RobustWeightingPolicy as RobustWeightingPolicy
from ._sparse_system import ColumnLayout as ColumnLayout
from ._sparse_system import SparseSystem as SparseSystem
from ._sparse_system import SparseSystemBuilder as SparseSystemBuilder
from ._variables import DesignVariable as DesignVariable
from ._variables import Var as Var
from ._variables import VarStore as VarStore
from ._variables import VarStoreSnapshot as VarStoreSnapshot
