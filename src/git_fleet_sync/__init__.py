"""git-fleet-sync: keep a fleet of Git repositories in their declared state."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .auth import AuthConfig, AuthResult, inject_token_to_url, mask_token_in_url, prepare_auth, prepared_auth
from .cli import app
from .config import FleetConfig, load_repos_file, resolve_state_file, resolve_token
from .diagnostics import (
    DiagnosticExecutor,
    DiagnosticOptions,
    DivergenceType,
    HealthReport,
    HealthStatus,
    HealthSummary,
    NetworkStatus,
    RepoHealth,
    WorkTreeStatus,
    calculate_summary,
    classify_divergence,
    classify_health,
    classify_network_status,
    generate_recommendation,
)
from .errors import (
    AuthError,
    ConfigurationError,
    FleetSyncError,
    ForgeError,
    GitCommandError,
    InvalidSeparatorError,
    InvalidStrategyError,
    MissingDependencyError,
    NoRepositoriesError,
    OperationCancelled,
    StateSaveError,
    StateStoreError,
)
from .executor import GitExecutor, NoopExecutor
from .forge import ForgeRepository, GiteaProvider, GitHubProvider, GitLabProvider, create_provider
from .formatters import OutputFormatter
from .git import GitClient, GitOperations
from .models import (
    Action,
    ActionResult,
    ActionType,
    ExecutionResult,
    Plan,
    PlanOptions,
    PlanRequest,
    RepoSpec,
    RunOptions,
    RunState,
    RunStateItem,
    RunStatus,
    Strategy,
    parse_strategy,
)
from .orchestrator import Orchestrator
from .planners import FilesystemPlanner, ForgePlanner, ForgePlannerConfig, StaticPlanner, SubgroupMode
from .progress import LoggingProgressSink, NoopProgressSink
from .schema import get_tool_schema
from .state import FileStateStore, InMemoryStateStore

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "Action",
    "ActionResult",
    "ActionType",
    "ExecutionResult",
    "Plan",
    "PlanOptions",
    "PlanRequest",
    "RepoSpec",
    "RunOptions",
    "RunState",
    "RunStateItem",
    "RunStatus",
    "Strategy",
    "parse_strategy",
    # Planning and execution
    "FilesystemPlanner",
    "ForgePlanner",
    "ForgePlannerConfig",
    "StaticPlanner",
    "SubgroupMode",
    "GitExecutor",
    "NoopExecutor",
    "Orchestrator",
    "FileStateStore",
    "InMemoryStateStore",
    "LoggingProgressSink",
    "NoopProgressSink",
    # Diagnostics
    "DiagnosticExecutor",
    "DiagnosticOptions",
    "DivergenceType",
    "HealthReport",
    "HealthStatus",
    "HealthSummary",
    "NetworkStatus",
    "RepoHealth",
    "WorkTreeStatus",
    "calculate_summary",
    "classify_divergence",
    "classify_health",
    "classify_network_status",
    "generate_recommendation",
    # Git and forges
    "GitClient",
    "GitOperations",
    "ForgeRepository",
    "GitHubProvider",
    "GitLabProvider",
    "GiteaProvider",
    "create_provider",
    # Auth
    "AuthConfig",
    "AuthResult",
    "inject_token_to_url",
    "mask_token_in_url",
    "prepare_auth",
    "prepared_auth",
    # Configuration
    "FleetConfig",
    "load_repos_file",
    "resolve_state_file",
    "resolve_token",
    # Errors
    "AuthError",
    "ConfigurationError",
    "FleetSyncError",
    "ForgeError",
    "GitCommandError",
    "InvalidSeparatorError",
    "InvalidStrategyError",
    "MissingDependencyError",
    "NoRepositoriesError",
    "OperationCancelled",
    "StateSaveError",
    "StateStoreError",
    # Formatters
    "OutputFormatter",
    "get_tool_schema",
]
