"""kubectl and helm wrappers."""

import base64
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path

from eksops import console
from eksops.errors import CommandError
from eksops.shell import run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeStatus:
    name: str
    ready: bool


@dataclass(frozen=True)
class PodStatus:
    name: str
    phase: str

    @property
    def running(self) -> bool:
        return self.phase == "Running"


@dataclass(frozen=True)
class ServiceStatus:
    name: str
    namespace: str
    type: str
    cluster_ip: str | None = None
    load_balancer_hostname: str | None = None


@dataclass(frozen=True)
class HelmRepo:
    name: str
    url: str


@dataclass(frozen=True)
class ReleaseRef:
    name: str
    namespace: str


def _not_found(err: CommandError) -> bool:
    text = f"{err.stderr} {err.stdout}".lower()
    return "notfound" in text or "not found" in text


class Kubectl:
    def __init__(self, env: dict | None = None, runner=run_command):
        self.env = env
        self._run = runner

    def _cmd(self, args: list[str], **kwargs):
        return self._run(["kubectl", *args], env=self.env, **kwargs)

    def _get_json(self, args: list[str]) -> dict | None:
        """`kubectl get ... -o json`, None when the object does not exist."""
        try:
            result = self._cmd(["get", *args, "-o", "json"], timeout=60)
        except CommandError as e:
            if _not_found(e):
                return None
            raise
        return json.loads(result.stdout)

    @staticmethod
    def _ns(namespace: str | None) -> list[str]:
        return ["-n", namespace] if namespace else []

    def reachable(self) -> bool:
        result = self._cmd(["get", "nodes"], check=False, timeout=30)
        return result.ok

    def current_context(self) -> str | None:
        result = self._cmd(["config", "current-context"], check=False, timeout=30)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def get_nodes(self) -> list[NodeStatus]:
        data = self._get_json(["nodes"]) or {}
        nodes = []
        for item in data.get("items", []):
            conditions = item.get("status", {}).get("conditions", [])
            ready = any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
            nodes.append(NodeStatus(item["metadata"]["name"], ready))
        return nodes

    def get_pods(self, namespace: str, selector: str | None = None) -> list[PodStatus]:
        args = ["pods", *self._ns(namespace)]
        if selector:
            args.extend(["-l", selector])
        data = self._get_json(args) or {}
        return [
            PodStatus(item["metadata"]["name"], item.get("status", {}).get("phase", "Unknown"))
            for item in data.get("items", [])
        ]

    def get_service(self, namespace: str, name: str) -> ServiceStatus | None:
        data = self._get_json(["service", name, *self._ns(namespace)])
        if data is None:
            return None
        ingress = data.get("status", {}).get("loadBalancer", {}).get("ingress") or [{}]
        hostname = ingress[0].get("hostname") or ingress[0].get("ip")
        if hostname == "<pending>":
            hostname = None
        spec = data.get("spec", {})
        return ServiceStatus(
            name=name,
            namespace=namespace,
            type=spec.get("type", ""),
            cluster_ip=spec.get("clusterIP"),
            load_balancer_hostname=hostname,
        )

    def endpoint_addresses(self, namespace: str, name: str) -> list[str]:
        data = self._get_json(["endpoints", name, *self._ns(namespace)]) or {}
        return [
            address["ip"]
            for subset in data.get("subsets") or []
            for address in subset.get("addresses") or []
        ]

    def exists(self, kind: str, name: str, namespace: str | None = None) -> bool:
        result = self._cmd(["get", kind, name, *self._ns(namespace)], check=False, timeout=30)
        return result.ok

    def storage_classes(self) -> list[str]:
        data = self._get_json(["storageclass"]) or {}
        return [item["metadata"]["name"] for item in data.get("items", [])]

    def pvc_phase(self, namespace: str | None, name: str) -> str | None:
        data = self._get_json(["pvc", name, *self._ns(namespace)])
        return data.get("status", {}).get("phase") if data else None

    def pod_phase(self, namespace: str | None, name: str) -> str | None:
        data = self._get_json(["pod", name, *self._ns(namespace)])
        return data.get("status", {}).get("phase") if data else None

    def secret_value(self, namespace: str, name: str, key: str) -> str | None:
        data = self._get_json(["secret", name, *self._ns(namespace)])
        if not data:
            return None
        encoded = data.get("data", {}).get(key)
        return base64.b64decode(encoded).decode() if encoded else None

    def apply_manifest(self, *manifests: dict) -> None:
        """kubectl apply -f - with the manifests as a JSON List."""
        document = {"apiVersion": "v1", "kind": "List", "items": list(manifests)}
        self._cmd(["apply", "-f", "-"], input=json.dumps(document))

    def create_namespace(self, namespace: str) -> None:
        if not self.exists("namespace", namespace):
            console.command(["kubectl", "create", "namespace", namespace])
            self._cmd(["create", "namespace", namespace])

    def create_deployment(self, name: str, image: str) -> None:
        self._cmd(["create", "deployment", name, f"--image={image}"])

    def expose(self, deployment: str, port: int, service_type: str = "LoadBalancer") -> None:
        self._cmd(["expose", "deployment", deployment, f"--port={port}", f"--type={service_type}"])

    def delete(self, kind: str, name: str | None = None, namespace: str | None = None,
               ignore_missing: bool = True) -> None:
        args = ["delete", kind]
        args.append(name if name else "--all")
        args.extend(self._ns(namespace))
        if ignore_missing:
            args.append("--ignore-not-found")
        console.command(["kubectl", *args])
        self._cmd(args, timeout=600)


class Helm:
    def __init__(self, env: dict | None = None, runner=run_command):
        self.env = env
        self._run = runner

    def _cmd(self, args: list[str], **kwargs):
        return self._run(["helm", *args], env=self.env, **kwargs)

    def add_repo(self, repo: HelmRepo) -> None:
        console.command(["helm", "repo", "add", repo.name, repo.url])
        self._cmd(["repo", "add", repo.name, repo.url, "--force-update"])
        self._cmd(["repo", "update"])

    def releases(self, namespace: str) -> list[str]:
        result = self._cmd(["list", "-n", namespace, "-o", "json"], check=False)
        if not result.ok or not result.stdout.strip():
            return []
        return [r["name"] for r in json.loads(result.stdout)]

    def release_exists(self, release: ReleaseRef) -> bool:
        return release.name in self.releases(release.namespace)

    def install(self, repo: HelmRepo, chart: str, namespace: str, values: dict,
                release: str | None = None, values_dir: Path | None = None) -> ReleaseRef:
        """
        Install repo/chart with values, written as a JSON values file.

        The values file is kept in values_dir when one is given, otherwise it only
        lives for the duration of the install.
        """
        ref = ReleaseRef(release or chart, namespace)
        self.add_repo(repo)
        if values_dir is not None:
            values_dir.mkdir(parents=True, exist_ok=True)
            self._install(ref, f"{repo.name}/{chart}", values, values_dir)
        else:
            with tempfile.TemporaryDirectory() as tmp:
                self._install(ref, f"{repo.name}/{chart}", values, Path(tmp))
        return ref

    def _install(self, ref: ReleaseRef, chart: str, values: dict, directory: Path) -> None:
        values_file = directory / f"{ref.name}-values.json"
        values_file.write_text(json.dumps(values, indent=2))
        cmd = ["install", ref.name, chart, "--namespace", ref.namespace, "--values", str(values_file)]
        console.command(["helm", *cmd])
        self._cmd(cmd, timeout=900)

    def uninstall(self, release: ReleaseRef) -> None:
        console.command(["helm", "uninstall", release.name, "-n", release.namespace])
        self._cmd(["uninstall", release.name, "--namespace", release.namespace])
