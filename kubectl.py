"""
kubectl execution for read-only cluster queries.

Commands run through asyncio subprocesses without a shell. Only the
read-only vocabulary in SAFE_OPERATIONS can be turned into a query.
"""

import asyncio
import logging
from typing import List, Optional

from errors import KubectlError


logger = logging.getLogger(__name__)


# Read-only kubectl verbs the investigation may use
SAFE_OPERATIONS = ("get", "describe", "logs", "events", "top")

LOG_TAIL_LINES = 200


def suggest_fix(error_message: str) -> Optional[str]:
    """Hint for common kubectl failures."""
    lower = error_message.lower()

    if "namespace" in lower and "not found" in lower:
        return "Namespace does not exist. Try listing available namespaces first."
    if "not found" in lower:
        return "Resource may not exist or may be in a different namespace. Try listing available resources first."
    if "forbidden" in lower:
        return "Insufficient permissions. Check RBAC configuration for read access to this resource."
    if "connection refused" in lower or "timeout" in lower or "timed out" in lower:
        return "Cannot connect to Kubernetes cluster. Verify cluster connectivity and kubectl configuration."
    return None


def build_kubectl_args(
    args: List[str],
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None
) -> List[str]:
    """Full argv for a kubectl invocation."""
    argv = ["kubectl"]
    if kubeconfig:
        argv += ["--kubeconfig", kubeconfig]
    if context:
        argv += ["--context", context]
    return argv + list(args)


async def execute_kubectl(
    args: List[str],
    timeout_seconds: int = 30,
    kubeconfig: Optional[str] = None,
    context: Optional[str] = None
) -> str:
    """
    Run kubectl and return stripped stdout.

    Raises:
        KubectlError: non-zero exit, timeout, or kubectl missing from PATH
    """
    argv = build_kubectl_args(args, kubeconfig, context)
    command = " ".join(argv)
    logger.debug(f"Executing: {command}")

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError:
        raise KubectlError(
            "kubectl binary not found. Please install kubectl and ensure it's in your PATH.",
            command=command,
            operation="execute_kubectl",
            component="kubectl"
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        message = f"kubectl command timed out after {timeout_seconds}s"
        raise KubectlError(
            message,
            command=command,
            suggestion=suggest_fix(message),
            operation="execute_kubectl",
            component="kubectl"
        )

    if process.returncode != 0:
        error_output = (stderr or stdout).decode(errors="replace").strip()
        message = f"kubectl command failed: {error_output}"
        raise KubectlError(
            message,
            command=command,
            suggestion=suggest_fix(error_output),
            operation="execute_kubectl",
            component="kubectl"
        )

    return stdout.decode(errors="replace").strip()


def query_args(query_type: str, resource: str, namespace: Optional[str] = None) -> List[str]:
    """kubectl arguments for one read-only query."""
    if query_type not in SAFE_OPERATIONS:
        raise ValueError(
            f"Unsafe operation '{query_type}' - only allowed: {', '.join(SAFE_OPERATIONS)}"
        )

    resource = (resource or "").strip()

    if query_type == "get":
        args = ["get", resource, "-o", "yaml"]
    elif query_type == "describe":
        args = ["describe", resource]
    elif query_type == "logs":
        args = ["logs", resource, f"--tail={LOG_TAIL_LINES}"]
    elif query_type == "events":
        if resource and resource.lower() != "all":
            args = ["events", "--for", resource]
        else:
            args = ["get", "events", "--sort-by=.lastTimestamp"]
    else:
        args = ["top", resource]

    if namespace:
        args += ["-n", namespace]
    return args


def query_command(query_type: str, resource: str, namespace: Optional[str] = None) -> str:
    """Printable kubectl command line for one read-only query."""
    return " ".join(["kubectl"] + query_args(query_type, resource, namespace))


class KubectlQueryExecutor:
    """Cluster query executor backed by the kubectl binary."""

    def __init__(
        self,
        kubeconfig: Optional[str] = None,
        context: Optional[str] = None,
        timeout_seconds: int = 30
    ):
        self.kubeconfig = kubeconfig
        self.context = context
        self.timeout_seconds = timeout_seconds

    async def execute_read_only_query(
        self,
        query_type: str,
        resource: str,
        namespace: Optional[str] = None
    ) -> str:
        """Run one query from SAFE_OPERATIONS; any other type raises ValueError."""
        args = query_args(query_type, resource, namespace)
        return await execute_kubectl(
            args,
            timeout_seconds=self.timeout_seconds,
            kubeconfig=self.kubeconfig,
            context=self.context
        )

    async def discover_api_resources(self) -> str:
        """`kubectl api-resources` output for the investigation prompt."""
        return await execute_kubectl(
            ["api-resources"],
            timeout_seconds=self.timeout_seconds,
            kubeconfig=self.kubeconfig,
            context=self.context
        )
