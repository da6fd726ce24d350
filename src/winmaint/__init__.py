"""!
@brief winmaint package root.
@details Modules under this namespace reconcile a Windows host towards its
desired state: diff items produced by an audit step are dispatched to
package, registry, service, scheduled-task and security-policy backends in
priority order, with idempotency checks, dry-run support and bounded-parallel
batches.
"""

__all__ = [
    "main",
    "engine",
    "dispatch",
    "fallback",
    "guard",
    "dry_run",
    "scheduler",
    "aggregate",
    "action_backend",
    "package_backends",
    "registry_tools",
    "tasks_services",
    "policy_backend",
    "diff_source",
    "options",
    "report",
    "models",
    "errors",
    "logging_ext",
    "exec_utils",
    "constants",
    "version",
]
