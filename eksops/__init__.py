"""eksops: staged provisioning and teardown of an EKS DevOps environment."""

__version__ = "0.1.0"
