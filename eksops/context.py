"""Explicit per-run context threaded through every stage call."""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from eksops import console
from eksops.aws import AwsClient, Eksctl, TemporaryCredentials, get_session, update_kubeconfig
from eksops.config import Settings
from eksops.kube import Helm, Kubectl
from eksops.terraform import Terraform


class ConfirmationPolicy(str, Enum):
    """How confirmation gates and in-stage questions are answered."""
    AUTO_APPROVE = "auto"
    PROMPT = "prompt"
    DENY = "deny"


@dataclass
class RunContext:
    """
    Credentials, region, cluster identity, settings and tool clients for one run.

    Resource state is never cached here; `outputs` only carries values produced
    by earlier stages of the same run (role ARN, resolved storage class, ...).
    """
    settings: Settings
    policy: ConfirmationPolicy = ConfirmationPolicy.PROMPT
    options: dict = field(default_factory=dict)
    credentials: TemporaryCredentials | None = None
    cancel: threading.Event = field(default_factory=threading.Event)
    confirm: Callable[[str, bool], bool] = console.ask_confirm
    outputs: dict = field(default_factory=dict)

    env: dict = field(default_factory=dict)
    kubectl: Kubectl | None = None
    helm: Helm | None = None
    eksctl: Eksctl | None = None
    aws: AwsClient | None = None
    terraform_factory: Callable[..., Terraform] = Terraform

    def __post_init__(self):
        self.env.update(self._base_env())
        if self.kubectl is None:
            self.kubectl = Kubectl(env=self.env)
        if self.helm is None:
            self.helm = Helm(env=self.env)
        if self.eksctl is None:
            self.eksctl = Eksctl(env=self.env)
        if self.aws is None:
            self.aws = AwsClient(self._session())

    def _base_env(self) -> dict:
        env = {"AWS_DEFAULT_REGION": self.settings.region}
        if self.settings.profile and not self.credentials:
            env["AWS_PROFILE"] = self.settings.profile
        if self.credentials:
            env.update(self.credentials.as_env())
        return env

    def _session(self):
        return get_session(self.settings.profile, self.settings.region, self.credentials)

    @property
    def region(self) -> str:
        return self.settings.region

    @property
    def cluster_name(self) -> str:
        return self.outputs.get("cluster_name") or self.settings.cluster_name

    def use_credentials(self, credentials: TemporaryCredentials) -> None:
        """Switch every client (and child process env) to temporary credentials."""
        self.credentials = credentials
        self.env.pop("AWS_PROFILE", None)
        self.env.update(self._base_env())
        self.aws.use_session(self._session())

    def terraform(self, directory: str) -> Terraform:
        return self.terraform_factory(self.settings.path(directory), self.env)

    def update_kubeconfig(self) -> None:
        update_kubeconfig(self.cluster_name, self.region, env=self.env)

    def ask(self, question: str, default: bool = False) -> bool:
        """
        An in-stage yes/no question under the run's confirmation policy.

        Only the prompt policy actually asks; auto-approve answers with the
        default and deny always answers no.
        """
        if self.policy == ConfirmationPolicy.PROMPT:
            return self.confirm(question, default)
        if self.policy == ConfirmationPolicy.DENY:
            return False
        return default
