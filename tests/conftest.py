"""
Shared pytest fixtures for Kube-Stash tests.

Provides an in-memory FakeGateway standing in for kubectl, sample
configurations and the CLI runner.
"""

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest
from typer.testing import CliRunner

from kube_stash.cores.gateway import ClusterGateway
from kube_stash.cores.safe_exit_manager import SafeExitManager
from kube_stash.errors import GatewayError
from kube_stash.helpers.config import StashConfig, TargetConfig
from kube_stash.types import BackupTarget, PodRef


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without a cluster")
    config.addinivalue_line("markers", "integration: tests needing kubectl and a reachable cluster")


def _parse_selector(selector: str) -> Dict[str, str]:
    labels = {}
    for part in filter(None, (selector or "").split(",")):
        key, _, value = part.partition("=")
        labels[key.strip()] = value.strip()
    return labels


def make_deployment(
    name: str,
    namespace: str,
    replicas: int = 1,
    labels: Optional[Dict[str, str]] = None,
    mount_path: str = "/data",
    claim: Optional[str] = None,
) -> Dict[str, Any]:
    """Deployment JSON as `kubectl get deployment -o json` returns it."""
    labels = labels or {"app": name}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "annotations": {}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": dict(labels)},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "containers": [
                        {
                            "name": name,
                            "image": f"{name}:latest",
                            "volumeMounts": [{"name": "data", "mountPath": mount_path}],
                        }
                    ],
                    "volumes": [
                        {"name": "data", "persistentVolumeClaim": {"claimName": claim or f"{name}-data"}}
                    ],
                },
            },
        },
    }


class FakeGateway(ClusterGateway):
    """
    In-memory cluster.

    Deployments own pods labelled with their matchLabels; scaling to zero
    removes them, scaling up recreates them. Exec behaviour is scripted per
    pod name.
    """

    def __init__(self):
        self.deployments: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.pods: Dict[str, List[Tuple[str, Dict[str, str]]]] = {}
        self.exec_out: Dict[str, Tuple[bytes, int]] = {}
        self.exec_out_errors: Dict[str, GatewayError] = {}
        self.exec_in_exit: Dict[str, int] = {}
        self.exec_in_errors: Dict[str, GatewayError] = {}
        self.received: Dict[str, bytes] = {}
        self.resource_errors: Dict[str, GatewayError] = {}
        self.wait_errors: Dict[str, GatewayError] = {}
        self.top_nodes_error: Optional[GatewayError] = None
        self.created_pods: List[Dict[str, Any]] = []
        self.deleted_pods: List[PodRef] = []
        self.scale_calls: List[Tuple[str, str, int]] = []
        self.calls: List[Tuple[str, ...]] = []

    # ---- scenario helpers ----

    def add_app(
        self,
        name: str,
        namespace: Optional[str] = None,
        replicas: int = 1,
        mount_path: str = "/data",
        data: bytes = b"",
        exit_code: int = 0,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        namespace = namespace or name
        deployment = make_deployment(name, namespace, replicas, labels, mount_path)
        self.deployments[(namespace, name)] = deployment
        self._spawn_pods(namespace, name, replicas)
        for pod_name, _ in self.pods.get(namespace, []):
            self.exec_out[pod_name] = (data, exit_code)

    def _spawn_pods(self, namespace: str, name: str, replicas: int) -> None:
        labels = self.deployments[(namespace, name)]["spec"]["selector"]["matchLabels"]
        pods = self.pods.setdefault(namespace, [])
        for i in range(replicas):
            pods.append((f"{name}-{i}", dict(labels)))

    def pod_names(self, namespace: str) -> List[str]:
        return [name for name, _ in self.pods.get(namespace, [])]

    def replicas(self, namespace: str, name: str) -> int:
        return self.deployments[(namespace, name)]["spec"]["replicas"]

    def annotations(self, namespace: str, name: str) -> Dict[str, str]:
        return self.deployments[(namespace, name)]["metadata"]["annotations"]

    # ---- ClusterGateway ----

    def get_resource(self, kind, namespace=None, name=None, all_namespaces=False) -> bytes:
        self.calls.append(("get_resource", kind, namespace or "", name or ""))
        if kind in self.resource_errors:
            raise self.resource_errors[kind]
        if kind == "deployment" and (namespace, name) not in self.deployments:
            raise GatewayError(GatewayError.NOT_FOUND, f'deployments.apps "{name}" not found')
        scope = "all" if all_namespaces else namespace or "cluster"
        return f"kind: {kind}\nname: {name or 'list'}\nscope: {scope}\n".encode("utf-8")

    def get_json(self, kind, namespace=None, name=None, selector=None) -> Dict[str, Any]:
        self.calls.append(("get_json", kind, namespace or "", name or ""))
        if kind in self.resource_errors:
            raise self.resource_errors[kind]
        if kind == "deployment":
            if (namespace, name) not in self.deployments:
                raise GatewayError(GatewayError.NOT_FOUND, f'deployments.apps "{name}" not found')
            return copy.deepcopy(self.deployments[(namespace, name)])
        return {"items": []}

    def find_pods(self, namespace, selector="") -> List[PodRef]:
        self.calls.append(("find_pods", namespace, selector))
        if "pods" in self.resource_errors:
            raise self.resource_errors["pods"]
        wanted = _parse_selector(selector)
        names = sorted(
            name
            for name, labels in self.pods.get(namespace, [])
            if all(labels.get(k) == v for k, v in wanted.items())
        )
        return [PodRef(namespace, n) for n in names]

    def exec_stream_out(self, pod, command, sink) -> int:
        self.calls.append(("exec_stream_out", str(pod), " ".join(command)))
        if pod.name in self.exec_out_errors:
            raise self.exec_out_errors[pod.name]
        data, exit_code = self.exec_out.get(pod.name, (b"", 0))
        for offset in range(0, len(data), 1024 * 1024):
            sink.write(data[offset:offset + 1024 * 1024])
        return exit_code

    def exec_stream_in(self, pod, command, source) -> int:
        self.calls.append(("exec_stream_in", str(pod), " ".join(command)))
        if pod.name in self.exec_in_errors:
            raise self.exec_in_errors[pod.name]
        buffer = bytearray()
        for chunk in iter(lambda: source.read(64 * 1024), b""):
            buffer.extend(chunk)
        self.received[pod.name] = bytes(buffer)
        return self.exec_in_exit.get(pod.name, 0)

    def scale(self, namespace, deployment, replicas) -> None:
        self.calls.append(("scale", namespace, deployment, str(replicas)))
        self.scale_calls.append((namespace, deployment, replicas))
        if "scale" in self.resource_errors:
            raise self.resource_errors["scale"]
        key = (namespace, deployment)
        if key not in self.deployments:
            raise GatewayError(GatewayError.NOT_FOUND, f'deployments.apps "{deployment}" not found')
        self.deployments[key]["spec"]["replicas"] = replicas
        labels = self.deployments[key]["spec"]["selector"]["matchLabels"]
        self.pods[namespace] = [
            (n, l) for n, l in self.pods.get(namespace, [])
            if not all(l.get(k) == v for k, v in labels.items())
        ]
        self._spawn_pods(namespace, deployment, replicas)

    def wait_for_condition(self, resource, condition, timeout) -> None:
        self.calls.append(("wait", str(resource), condition))
        if condition in self.wait_errors:
            raise self.wait_errors[condition]

    def create_pod(self, manifest) -> PodRef:
        meta = manifest["metadata"]
        self.calls.append(("create_pod", meta["namespace"], meta["name"]))
        self.created_pods.append(manifest)
        self.pods.setdefault(meta["namespace"], []).append((meta["name"], dict(meta.get("labels", {}))))
        return PodRef(meta["namespace"], meta["name"])

    def delete_pod(self, pod) -> None:
        self.calls.append(("delete_pod", str(pod)))
        self.deleted_pods.append(pod)
        self.pods[pod.namespace] = [(n, l) for n, l in self.pods.get(pod.namespace, []) if n != pod.name]

    def annotate(self, namespace, kind, name, key, value) -> None:
        self.calls.append(("annotate", namespace, name, key, str(value)))
        annotations = self.deployments[(namespace, name)]["metadata"]["annotations"]
        if value is None:
            annotations.pop(key, None)
        else:
            annotations[key] = value

    def run_text(self, args, description) -> str:
        self.calls.append(("run_text", " ".join(args)))
        if self.top_nodes_error is not None:
            raise self.top_nodes_error
        return "NAME   CPU(cores)   MEMORY(bytes)\nnode1  250m         1200Mi\n"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_safe_exit():
    """Fresh SafeExitManager (and cancel event) for every test."""
    SafeExitManager.reset_instance()
    yield
    SafeExitManager.reset_instance()


@pytest.fixture
def cli_runner():
    """Typer CLI runner for testing commands."""
    return CliRunner()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def target_factory():
    """Factory for BackupTarget instances with sensible defaults."""

    def _make(name: str = "alpha", **kwargs) -> BackupTarget:
        kwargs.setdefault("namespace", name)
        kwargs.setdefault("mount_path", "/data")
        kwargs.setdefault("pod_selector", f"app={name}")
        return BackupTarget(name=name, **kwargs)

    return _make


@pytest.fixture
def stash_config(tmp_path):
    """Config with the alpha/beta/gamma targets and no cluster artifacts."""
    return StashConfig(
        backup={"root": str(tmp_path / "backups")},
        restore={"rollout_timeout": 0},
        targets=[
            TargetConfig(name=n, namespace=n, pod_selector=f"app={n}", mount_path="/data")
            for n in ("alpha", "beta", "gamma")
        ],
        cluster_artifacts=[],
    )


@pytest.fixture
def config_file(tmp_path, stash_config):
    path = tmp_path / "config.json"
    stash_config.save(path)
    return path


@pytest.fixture
def scenario_gateway(fake_gateway):
    """alpha: 10 MB of data, beta: no pod, gamma: tar exits 1."""
    fake_gateway.add_app("alpha", replicas=2, data=b"a" * (10 * 1024 * 1024))
    fake_gateway.add_app("beta", replicas=0)
    fake_gateway.add_app("gamma", data=b"partial", exit_code=1)
    return fake_gateway


@pytest.fixture
def deployment_factory():
    """make_deployment() as a fixture for helper tests."""
    return make_deployment
