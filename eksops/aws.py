"""AWS access: boto3 session handling, STS role assumption, EKS/IAM helpers, eksctl."""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import boto3
from botocore.exceptions import ClientError, NoCredentialsError, ProfileNotFound

from eksops import console
from eksops.errors import AuthorizationRevoked, ConfigError
from eksops.shell import run_command

logger = logging.getLogger(__name__)

EBS_CSI_ADDON = "aws-ebs-csi-driver"
EBS_CSI_SERVICE_ACCOUNT = "system:serviceaccount:kube-system:ebs-csi-controller-sa"

_MISSING_CODES = {"ResourceNotFoundException", "NoSuchEntity", "NoSuchBucket", "404", "NotFound"}
_AUTH_CODES = {"ExpiredToken", "ExpiredTokenException", "InvalidClientTokenId", "UnrecognizedClientException"}


def _code(err: ClientError) -> str:
    return err.response.get("Error", {}).get("Code", "")


def _missing(err: ClientError) -> bool:
    return _code(err) in _MISSING_CODES


def _check_auth(err: ClientError) -> None:
    if _code(err) in _AUTH_CODES:
        raise AuthorizationRevoked(str(err)) from err


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key: str
    secret_key: str
    session_token: str
    expires_at: datetime

    def expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def as_env(self) -> dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": self.access_key,
            "AWS_SECRET_ACCESS_KEY": self.secret_key,
            "AWS_SESSION_TOKEN": self.session_token,
        }


def get_session(profile: str | None = None, region: str | None = None,
                credentials: TemporaryCredentials | None = None) -> boto3.Session:
    if credentials:
        return boto3.Session(
            aws_access_key_id=credentials.access_key,
            aws_secret_access_key=credentials.secret_key,
            aws_session_token=credentials.session_token,
            region_name=region,
        )
    try:
        return boto3.Session(profile_name=profile, region_name=region)
    except ProfileNotFound as e:
        raise ConfigError(f"AWS profile '{profile}' not found") from e


class AwsClient:
    """The AWS API calls the pipelines make, over one swappable boto3 session."""

    def __init__(self, session: boto3.Session):
        self.session = session

    def use_session(self, session: boto3.Session) -> None:
        self.session = session

    @property
    def region(self) -> str | None:
        return self.session.region_name

    def _client(self, service: str):
        return self.session.client(service)

    # ─── STS ───

    def caller_identity(self) -> dict | None:
        try:
            return self._client("sts").get_caller_identity()
        except (ClientError, NoCredentialsError) as e:
            logger.debug("get_caller_identity failed: %s", e)
            return None

    def account_id(self) -> str:
        identity = self.caller_identity()
        if not identity:
            raise AuthorizationRevoked("No valid AWS credentials")
        return identity["Account"]

    def assume_role(self, role_arn: str, session_name: str, duration_seconds: int) -> TemporaryCredentials:
        response = self._client("sts").assume_role(
            RoleArn=role_arn,
            RoleSessionName=session_name,
            DurationSeconds=duration_seconds,
        )
        creds = response["Credentials"]
        return TemporaryCredentials(
            access_key=creds["AccessKeyId"],
            secret_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
            expires_at=creds["Expiration"],
        )

    # ─── EKS ───

    def describe_cluster(self, name: str) -> dict | None:
        try:
            return self._client("eks").describe_cluster(name=name)["cluster"]
        except ClientError as e:
            if _missing(e):
                return None
            _check_auth(e)
            raise

    def cluster_status(self, name: str) -> str | None:
        cluster = self.describe_cluster(name)
        return cluster.get("status") if cluster else None

    def oidc_issuer_id(self, name: str) -> str:
        issuer = self.describe_cluster(name)["identity"]["oidc"]["issuer"]
        return issuer.rstrip("/").split("/")[-1]

    def describe_addon(self, cluster: str, addon: str) -> dict | None:
        try:
            return self._client("eks").describe_addon(clusterName=cluster, addonName=addon)["addon"]
        except ClientError as e:
            if _missing(e):
                return None
            _check_auth(e)
            raise

    def create_addon(self, cluster: str, addon: str, role_arn: str) -> None:
        self._client("eks").create_addon(
            clusterName=cluster, addonName=addon, serviceAccountRoleArn=role_arn,
        )

    def wait_addon_active(self, cluster: str, addon: str) -> None:
        self._client("eks").get_waiter("addon_active").wait(clusterName=cluster, addonName=addon)

    def delete_addon(self, cluster: str, addon: str) -> None:
        eks = self._client("eks")
        eks.delete_addon(clusterName=cluster, addonName=addon)
        eks.get_waiter("addon_deleted").wait(clusterName=cluster, addonName=addon)

    def delete_cluster_with_nodegroups(self, name: str) -> None:
        """Delete every nodegroup, then the cluster, waiting on each."""
        eks = self._client("eks")
        for nodegroup in eks.list_nodegroups(clusterName=name).get("nodegroups", []):
            console.console.print(f"[dim]Deleting nodegroup {nodegroup}...[/dim]")
            eks.delete_nodegroup(clusterName=name, nodegroupName=nodegroup)
            eks.get_waiter("nodegroup_deleted").wait(clusterName=name, nodegroupName=nodegroup)
        eks.delete_cluster(name=name)
        eks.get_waiter("cluster_deleted").wait(name=name)

    # ─── IAM ───

    def oidc_provider_exists(self, issuer_id: str) -> bool:
        providers = self._client("iam").list_open_id_connect_providers()["OpenIDConnectProviderList"]
        return any(issuer_id in p["Arn"] for p in providers)

    def ensure_role(self, name: str, trust_policy: dict) -> str:
        """Create the role, or update its trust policy if it exists. Returns the ARN."""
        iam = self._client("iam")
        document = json.dumps(trust_policy)
        try:
            role = iam.get_role(RoleName=name)["Role"]
            iam.update_assume_role_policy(RoleName=name, PolicyDocument=document)
            return role["Arn"]
        except ClientError as e:
            if not _missing(e):
                raise
        return iam.create_role(RoleName=name, AssumeRolePolicyDocument=document)["Role"]["Arn"]

    def attach_role_policy(self, role_name: str, policy_arn: str) -> None:
        self._client("iam").attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)

    # ─── EC2 / S3 / DynamoDB ───

    def instances_by_tag(self, name_tag: str,
                         states=("pending", "running", "stopping", "stopped")) -> list[str]:
        response = self._client("ec2").describe_instances(Filters=[
            {"Name": "tag:Name", "Values": [name_tag]},
            {"Name": "instance-state-name", "Values": list(states)},
        ])
        return [
            instance["InstanceId"]
            for reservation in response.get("Reservations", [])
            for instance in reservation.get("Instances", [])
        ]

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self._client("s3").head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if _missing(e):
                return False
            raise

    def empty_bucket(self, bucket: str) -> int:
        """Delete every object version in the bucket. Returns the number removed."""
        s3 = self.session.resource("s3")
        removed = 0
        for batch in s3.Bucket(bucket).object_versions.delete():
            removed += len(batch.get("Deleted", []))
        return removed

    def table_exists(self, table: str) -> bool:
        try:
            self._client("dynamodb").describe_table(TableName=table)
            return True
        except ClientError as e:
            if _missing(e):
                return False
            raise


def ebs_trust_policy(account_id: str, region: str, issuer_id: str) -> dict:
    provider = f"oidc.eks.{region}.amazonaws.com/id/{issuer_id}"
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Federated": f"arn:aws:iam::{account_id}:oidc-provider/{provider}"},
            "Action": "sts:AssumeRoleWithWebIdentity",
            "Condition": {"StringEquals": {f"{provider}:sub": EBS_CSI_SERVICE_ACCOUNT}},
        }],
    }


class Eksctl:
    def __init__(self, env: dict | None = None, runner=run_command):
        self.env = env
        self._run = runner

    def _cmd(self, args: list[str], **kwargs):
        return self._run(["eksctl", *args], env=self.env, **kwargs)

    def create_cluster(self, name: str, region: str, node_type: str, nodes: int,
                       zones: str, ssh_public_key: str) -> None:
        args = [
            "create", "cluster",
            "--name", name,
            "--region", region,
            "--node-type", node_type,
            "--nodes", str(nodes),
            "--with-oidc",
            "--ssh-access",
            "--ssh-public-key", ssh_public_key,
            "--managed",
            "--full-ecr-access",
            "--zones", zones,
        ]
        console.command(["eksctl", *args])
        self._cmd(args, capture=False)

    def delete_cluster(self, name: str, region: str) -> None:
        args = ["delete", "cluster", "--name", name, "--region", region, "--wait"]
        console.command(["eksctl", *args])
        self._cmd(args, capture=False)

    def associate_oidc_provider(self, name: str, region: str) -> None:
        args = ["utils", "associate-iam-oidc-provider", "--cluster", name, "--region", region, "--approve"]
        console.command(["eksctl", *args])
        self._cmd(args)


def update_kubeconfig(name: str, region: str, env: dict | None = None, runner=run_command) -> None:
    cmd = ["aws", "eks", "update-kubeconfig", "--name", name, "--region", region]
    console.command(cmd)
    runner(cmd, env=env)
