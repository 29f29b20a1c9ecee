"""
Tests for read-only kubectl execution.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from errors import KubectlError
from kubectl import (
    SAFE_OPERATIONS,
    KubectlQueryExecutor,
    build_kubectl_args,
    execute_kubectl,
    query_args,
    query_command,
    suggest_fix
)


def fake_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.kill = MagicMock()
    process.wait = AsyncMock()
    return process


class TestQueryArgs:
    """Test translation of data requests into kubectl arguments."""

    def test_query_command(self):
        """Printable command line used in gathered data and logs."""
        assert query_command("logs", "pod/a") == "kubectl logs pod/a --tail=200"
        assert query_command("get", "pods", "prod") == "kubectl get pods -o yaml -n prod"

    def test_safe_operations(self):
        """Only read-only verbs are allowed."""
        assert SAFE_OPERATIONS == ("get", "describe", "logs", "events", "top")

    def test_get_uses_yaml(self):
        assert query_args("get", "pods", "prod") == ["get", "pods", "-o", "yaml", "-n", "prod"]

    def test_describe(self):
        assert query_args("describe", "pod/api-1") == ["describe", "pod/api-1"]

    def test_logs_tail(self):
        assert query_args("logs", "pod/api-1", "prod") == ["logs", "pod/api-1", "--tail=200", "-n", "prod"]

    def test_events_for_resource(self):
        assert query_args("events", "pod/api-1") == ["events", "--for", "pod/api-1"]

    def test_events_all(self):
        """Empty or 'all' resource lists every event."""
        assert query_args("events", "") == ["get", "events", "--sort-by=.lastTimestamp"]
        assert query_args("events", "all", "prod")[-2:] == ["-n", "prod"]

    def test_top(self):
        assert query_args("top", "pods") == ["top", "pods"]

    @pytest.mark.parametrize("query_type", ["delete", "apply", "patch", "exec", "scale", ""])
    def test_unsafe_rejected(self, query_type):
        """Mutating or unknown verbs raise ValueError."""
        with pytest.raises(ValueError, match="Unsafe operation"):
            query_args(query_type, "pods")


class TestSuggestFix:
    """Test hints for common kubectl failures."""

    def test_namespace_not_found(self):
        assert "Namespace" in suggest_fix('namespaces "nope" not found')

    def test_resource_not_found(self):
        assert "Resource may not exist" in suggest_fix('pods "api" not found')

    def test_forbidden(self):
        assert "RBAC" in suggest_fix("Error from server (Forbidden): pods is forbidden")

    def test_connection(self):
        assert "connect" in suggest_fix("dial tcp: connection refused")

    def test_unknown(self):
        assert suggest_fix("something odd") is None


class TestExecuteKubectl:
    """Test the subprocess wrapper."""

    def test_build_args_with_kubeconfig_and_context(self):
        argv = build_kubectl_args(["get", "pods"], kubeconfig="/tmp/kc", context="dev")
        assert argv == ["kubectl", "--kubeconfig", "/tmp/kc", "--context", "dev", "get", "pods"]

    @pytest.mark.asyncio
    async def test_success_returns_stdout(self):
        """Stripped stdout is returned on exit code 0."""
        process = fake_process(stdout=b"pod-a Running\n")
        with patch("kubectl.asyncio.create_subprocess_exec", AsyncMock(return_value=process)) as spawn:
            output = await execute_kubectl(["get", "pods"])

        assert output == "pod-a Running"
        assert spawn.call_args.args[:3] == ("kubectl", "get", "pods")

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        """Failure raises KubectlError with command and suggestion."""
        process = fake_process(returncode=1, stderr=b'Error from server (NotFound): pods "x" not found')
        with patch("kubectl.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(KubectlError) as exc_info:
                await execute_kubectl(["get", "pods", "x"])

        assert exc_info.value.command == "kubectl get pods x"
        assert "not found" in str(exc_info.value)
        assert exc_info.value.suggestion is not None

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        """kubectl not on PATH raises KubectlError."""
        with patch("kubectl.asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError())):
            with pytest.raises(KubectlError, match="not found"):
                await execute_kubectl(["get", "pods"])

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        """A hung kubectl is killed and reported."""
        process = fake_process()

        async def hang():
            await asyncio.sleep(3600)

        process.communicate = hang
        with patch("kubectl.asyncio.create_subprocess_exec", AsyncMock(return_value=process)):
            with pytest.raises(KubectlError, match="timed out"):
                await execute_kubectl(["get", "pods"], timeout_seconds=0.01)

        process.kill.assert_called_once()


class TestKubectlQueryExecutor:
    """Test the executor used by the investigation loop."""

    @pytest.mark.asyncio
    async def test_execute_read_only_query(self):
        """Queries pass kubeconfig and context through."""
        executor = KubectlQueryExecutor(kubeconfig="/tmp/kc", context="dev", timeout_seconds=5)
        with patch("kubectl.execute_kubectl", AsyncMock(return_value="yaml")) as run:
            output = await executor.execute_read_only_query("get", "pods", "prod")

        assert output == "yaml"
        run.assert_awaited_once_with(
            ["get", "pods", "-o", "yaml", "-n", "prod"],
            timeout_seconds=5,
            kubeconfig="/tmp/kc",
            context="dev"
        )

    @pytest.mark.asyncio
    async def test_unsafe_query_never_runs(self):
        """An unsafe type raises before any subprocess is started."""
        executor = KubectlQueryExecutor()
        with patch("kubectl.execute_kubectl", AsyncMock()) as run:
            with pytest.raises(ValueError):
                await executor.execute_read_only_query("delete", "pod/api")

        run.assert_not_called()
