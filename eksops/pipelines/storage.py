"""EBS CSI driver add-on, the ebs-sc storage class and an optional PVC smoke test."""

from eksops import console
from eksops.aws import EBS_CSI_ADDON, ebs_trust_policy
from eksops.checks import cluster_reachable, credentials_valid, tools_present
from eksops.orchestrator import Pipeline
from eksops.pipelines.common import pods_running
from eksops.stage import Stage

TEST_PVC = "ebs-test-claim"
TEST_POD = "ebs-test-pod"
TEST_POLL_INTERVAL = 5.0
TEST_ATTEMPTS = 10


def _ebs_pods_running(context) -> bool:
    return pods_running(context, "kube-system", name_contains="ebs-csi")


def _driver_healthy(context) -> bool:
    addon = context.aws.describe_addon(context.cluster_name, EBS_CSI_ADDON)
    return addon is not None and _ebs_pods_running(context)


def _install_driver(context) -> str:
    settings = context.settings
    aws = context.aws
    cluster = context.cluster_name

    if aws.describe_addon(cluster, EBS_CSI_ADDON) is not None:
        console.warning("EBS CSI driver add-on is installed but its pods are not running; recreating it")
        aws.delete_addon(cluster, EBS_CSI_ADDON)

    issuer_id = aws.oidc_issuer_id(cluster)
    if aws.oidc_provider_exists(issuer_id):
        console.success("OIDC provider already exists")
    else:
        context.eksctl.associate_oidc_provider(cluster, context.region)
        console.success("OIDC provider created")

    trust = ebs_trust_policy(aws.account_id(), context.region, issuer_id)
    role_arn = aws.ensure_role(settings.ebs_role_name, trust)
    aws.attach_role_policy(settings.ebs_role_name, settings.ebs_policy_arn)
    console.success(f"IAM role {role_arn} ready")

    aws.create_addon(cluster, EBS_CSI_ADDON, role_arn)
    aws.wait_addon_active(cluster, EBS_CSI_ADDON)
    return f"{EBS_CSI_ADDON} add-on active with role {settings.ebs_role_name}"


def storage_class_manifest(name: str) -> dict:
    return {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {"name": name},
        "provisioner": "ebs.csi.aws.com",
        "volumeBindingMode": "WaitForFirstConsumer",
        "parameters": {"type": "gp3", "encrypted": "true"},
    }


def _apply_storage_class(context) -> str:
    name = context.settings.storage_class
    context.kubectl.apply_manifest(storage_class_manifest(name))
    return f"storage class '{name}' created"


# ─────────────────────────────────────────────────────────────────────────────
# PVC SMOKE TEST
# ─────────────────────────────────────────────────────────────────────────────

def pvc_test_manifests(storage_class: str) -> list[dict]:
    claim = {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": TEST_PVC},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "storageClassName": storage_class,
            "resources": {"requests": {"storage": "4Gi"}},
        },
    }
    pod = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": TEST_POD},
        "spec": {
            "containers": [{
                "name": "ebs-test",
                "image": "nginx",
                "volumeMounts": [{"mountPath": "/usr/share/nginx/html", "name": "ebs-volume"}],
            }],
            "volumes": [{"name": "ebs-volume", "persistentVolumeClaim": {"claimName": TEST_PVC}}],
        },
    }
    return [claim, pod]


def _create_test_volume(context) -> str:
    context.kubectl.apply_manifest(*pvc_test_manifests(context.settings.storage_class))
    return f"created {TEST_PVC} and {TEST_POD}"


def _test_volume_bound(context) -> bool:
    # WaitForFirstConsumer: the claim only binds once the pod is scheduled
    kubectl = context.kubectl
    return kubectl.pvc_phase(None, TEST_PVC) == "Bound" and kubectl.pod_phase(None, TEST_POD) == "Running"


def _test_volume_absent(context) -> bool:
    kubectl = context.kubectl
    return kubectl.pvc_phase(None, TEST_PVC) is None and kubectl.pod_phase(None, TEST_POD) is None


def _remove_test_volume(context) -> str:
    context.kubectl.delete("pod", TEST_POD)
    context.kubectl.delete("pvc", TEST_PVC)
    return "test pod and claim removed"


def build_provision(settings, options=None) -> Pipeline:
    options = options or {}
    stages = [
        Stage(
            name="ebs-csi-driver",
            apply=_install_driver,
            description="EBS CSI driver add-on with its IRSA role",
            preconditions=[
                *tools_present("aws", "kubectl"),
                credentials_valid(),
                cluster_reachable(),
            ],
            idempotency_check=_driver_healthy,
            readiness_check=_ebs_pods_running,
            poll_interval=settings.poll_interval,
            max_attempts=settings.addon_attempts,
        ),
        Stage(
            name="storage-class",
            apply=_apply_storage_class,
            description=f"StorageClass '{settings.storage_class}' (gp3, encrypted)",
            idempotency_check=lambda c: c.settings.storage_class in c.kubectl.storage_classes(),
        ),
    ]
    if options.get("test_pvc"):
        stages += [
            Stage(
                name="verify-pvc",
                apply=_create_test_volume,
                description="Bind a 4Gi test claim through a pod",
                idempotency_check=_test_volume_bound,
                readiness_check=_test_volume_bound,
                rollback=_remove_test_volume,
                poll_interval=min(settings.poll_interval, TEST_POLL_INTERVAL),
                max_attempts=TEST_ATTEMPTS,
                fatal=False,
            ),
            Stage(
                name="remove-pvc-test",
                apply=_remove_test_volume,
                description="Delete the test pod and claim",
                idempotency_check=_test_volume_absent,
                fatal=False,
            ),
        ]
    return Pipeline(
        name="storage",
        description="EBS CSI driver and storage class",
        stages=stages,
    )
