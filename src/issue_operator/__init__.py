"""Issue Operator - keeps GitHub issues in step with declarative IssueRequest records."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("issue-operator")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from issue_operator.bootstrap import BootstrapContext, bootstrap
from issue_operator.controller import Controller
from issue_operator.reconciler import IssueRequestReconciler, ReconcileResult

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
    "BootstrapContext",
    "Controller",
    "IssueRequestReconciler",
    "ReconcileResult",
    "bootstrap",
]
