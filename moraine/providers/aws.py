"""
AWS provider implementation.

Stacks are CloudFormation stacks (templates synthesized by the CDK app),
storage is S3, the registry is ECR and region bootstrap runs ``cdk
bootstrap``.
"""

import logging
import subprocess
from pathlib import Path
from typing import Any, Mapping

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from moraine.artifacts.resolver import ImageRecord
from moraine.config import DeploymentConfig
from moraine.core.stack import StackStatus
from moraine.errors import (
    ArtifactNotFound,
    BootstrapFailed,
    ConfigurationError,
    PlatformOperationFailed,
    RegistryResolutionFailed,
)
from moraine.providers.base import (
    BootstrapToolkit,
    ContainerRegistry,
    ObjectStore,
    Provider,
    StackPlatform,
    StackResource,
    StackSnapshot,
)

logger = logging.getLogger(__name__)

CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]

STATUS_MAP: dict[str, StackStatus] = {
    "CREATE_IN_PROGRESS": StackStatus.DEPLOYING,
    "CREATE_COMPLETE": StackStatus.DEPLOYED,
    "CREATE_FAILED": StackStatus.FAILED,
    "ROLLBACK_IN_PROGRESS": StackStatus.DEPLOYING,
    "ROLLBACK_COMPLETE": StackStatus.FAILED,
    "ROLLBACK_FAILED": StackStatus.FAILED,
    "UPDATE_IN_PROGRESS": StackStatus.DEPLOYING,
    "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS": StackStatus.DEPLOYING,
    "UPDATE_COMPLETE": StackStatus.DEPLOYED,
    "UPDATE_FAILED": StackStatus.FAILED,
    "UPDATE_ROLLBACK_IN_PROGRESS": StackStatus.DEPLOYING,
    "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS": StackStatus.DEPLOYING,
    "UPDATE_ROLLBACK_COMPLETE": StackStatus.FAILED,
    "UPDATE_ROLLBACK_FAILED": StackStatus.FAILED,
    "REVIEW_IN_PROGRESS": StackStatus.DEPLOYING,
    "IMPORT_IN_PROGRESS": StackStatus.DEPLOYING,
    "IMPORT_COMPLETE": StackStatus.DEPLOYED,
    "IMPORT_ROLLBACK_IN_PROGRESS": StackStatus.DEPLOYING,
    "IMPORT_ROLLBACK_COMPLETE": StackStatus.FAILED,
    "IMPORT_ROLLBACK_FAILED": StackStatus.FAILED,
    "DELETE_IN_PROGRESS": StackStatus.DESTROYING,
    "DELETE_FAILED": StackStatus.DELETE_FAILED,
    "DELETE_COMPLETE": StackStatus.DESTROYED,
}

# CloudFormation's limit for an inline TemplateBody
MAX_TEMPLATE_BODY = 51_200


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return type(error).__name__


def _error_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message", str(error))
    return str(error)


def _missing(error: Exception) -> bool:
    return isinstance(error, ClientError) and "does not exist" in _error_message(error)


def _api_failure(error: Exception, action: str, stack: str, step: str = "status") -> PlatformOperationFailed:
    return PlatformOperationFailed(
        f"{action} failed: {_error_message(error)}",
        stack=stack,
        step=step,
        status=_error_code(error),
        reason=_error_message(error),
    )


class _ClientCache:
    """One boto3 client per (service, region)."""

    def __init__(self, session: boto3.Session):
        self.session = session
        self._clients: dict[tuple[str, str], Any] = {}

    def get(self, service: str, region: str) -> Any:
        key = (service, region)
        if key not in self._clients:
            self._clients[key] = self.session.client(service, region_name=region)
        return self._clients[key]


class CloudFormationPlatform(StackPlatform):
    """CloudFormation stacks through boto3."""

    def __init__(self, clients: _ClientCache, tags: Mapping[str, str] | None = None):
        self.clients = clients
        self.tags = dict(tags or {})

    def _cfn(self, region: str) -> Any:
        return self.clients.get("cloudformation", region)

    def describe(self, name: str, region: str) -> StackSnapshot | None:
        try:
            response = self._cfn(region).describe_stacks(StackName=name)
        except (ClientError, BotoCoreError) as e:
            if _missing(e):
                return None
            raise _api_failure(e, "DescribeStacks", name) from e

        stacks = response.get("Stacks", [])
        if not stacks:
            return None
        stack = stacks[0]
        raw_status = stack["StackStatus"]

        return StackSnapshot(
            name=name,
            region=region,
            status=STATUS_MAP.get(raw_status, StackStatus.FAILED),
            raw_status=raw_status,
            parameters={
                p["ParameterKey"]: p.get("ParameterValue", "")
                for p in stack.get("Parameters", [])
            },
            outputs={o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])},
            reason=stack.get("StackStatusReason"),
            needs_recreate=raw_status == "ROLLBACK_COMPLETE",
        )

    def _template_args(self, template: str | Path) -> dict[str, str]:
        text = str(template)
        if text.startswith("https://"):
            return {"TemplateURL": text}

        path = Path(template)
        if not path.is_file():
            raise ConfigurationError(f"Template not found: {path}", step="deploy")
        body = path.read_text(encoding="utf-8")
        if len(body.encode("utf-8")) > MAX_TEMPLATE_BODY:
            raise ConfigurationError(
                f"Template {path} exceeds {MAX_TEMPLATE_BODY} bytes; upload it and pass its https URL",
                step="deploy",
            )
        return {"TemplateBody": body}

    @staticmethod
    def _parameters(parameters: Mapping[str, str]) -> list[dict[str, str]]:
        return [
            {"ParameterKey": key, "ParameterValue": str(value)}
            for key, value in parameters.items()
        ]

    def create(self, name: str, region: str, template: str | Path,
               parameters: Mapping[str, str]) -> None:
        template_args = self._template_args(template)
        try:
            self._cfn(region).create_stack(
                StackName=name,
                Parameters=self._parameters(parameters),
                Capabilities=CAPABILITIES,
                Tags=[{"Key": key, "Value": value} for key, value in self.tags.items()],
                **template_args,
            )
        except (ClientError, BotoCoreError) as e:
            raise PlatformOperationFailed(
                f"CreateStack rejected: {_error_message(e)}",
                stack=name, step="deploy", reason=_error_message(e),
            ) from e

    def update(self, name: str, region: str, template: str | Path,
               parameters: Mapping[str, str]) -> bool:
        template_args = self._template_args(template)
        try:
            self._cfn(region).update_stack(
                StackName=name,
                Parameters=self._parameters(parameters),
                Capabilities=CAPABILITIES,
                **template_args,
            )
        except (ClientError, BotoCoreError) as e:
            if "No updates are to be performed" in _error_message(e):
                return False
            raise PlatformOperationFailed(
                f"UpdateStack rejected: {_error_message(e)}",
                stack=name, step="deploy", reason=_error_message(e),
            ) from e
        return True

    def delete(self, name: str, region: str, retain: list[str] | None = None) -> None:
        kwargs: dict[str, Any] = {"StackName": name}
        if retain:
            kwargs["RetainResources"] = list(retain)
        try:
            self._cfn(region).delete_stack(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise PlatformOperationFailed(
                f"DeleteStack rejected: {_error_message(e)}",
                stack=name, step="destroy", reason=_error_message(e),
            ) from e

    def resources(self, name: str, region: str) -> list[StackResource]:
        paginator = self._cfn(region).get_paginator("list_stack_resources")
        resources = []
        try:
            for page in paginator.paginate(StackName=name):
                for summary in page.get("StackResourceSummaries", []):
                    resources.append(
                        StackResource(
                            logical_id=summary["LogicalResourceId"],
                            physical_id=summary.get("PhysicalResourceId"),
                            resource_type=summary["ResourceType"],
                            status=summary["ResourceStatus"],
                            reason=summary.get("ResourceStatusReason"),
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            if _missing(e):
                return []
            raise _api_failure(e, "ListStackResources", name) from e
        return resources

    def failure_reason(self, name: str, region: str) -> str | None:
        try:
            response = self._cfn(region).describe_stack_events(StackName=name)
        except (ClientError, BotoCoreError) as e:
            if _missing(e):
                return None
            raise _api_failure(e, "DescribeStackEvents", name) from e

        # Events are newest first; the first failure names the culprit
        for event in response.get("StackEvents", []):
            status = event.get("ResourceStatus", "")
            reason = event.get("ResourceStatusReason")
            if status.endswith("_FAILED") and reason:
                return f"{event.get('LogicalResourceId', name)}: {reason}"
        return None


class S3ObjectStore(ObjectStore):
    """S3 buckets, including versioned ones."""

    def __init__(self, clients: _ClientCache):
        self.clients = clients

    def _s3(self, region: str) -> Any:
        return self.clients.get("s3", region)

    def exists(self, bucket: str, region: str) -> bool:
        try:
            self._s3(region).head_bucket(Bucket=bucket)
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) in ("404", "NoSuchBucket", "NotFound"):
                return False
            raise PlatformOperationFailed(
                f"Could not look up s3://{bucket}: {_error_message(e)}", step="drain", status=_error_code(e)
            ) from e
        return True

    def is_empty(self, bucket: str, region: str) -> bool:
        try:
            response = self._s3(region).list_object_versions(Bucket=bucket, MaxKeys=1)
        except (ClientError, BotoCoreError) as e:
            raise PlatformOperationFailed(
                f"Could not list s3://{bucket}: {_error_message(e)}", step="drain", status=_error_code(e)
            ) from e
        return not response.get("Versions") and not response.get("DeleteMarkers")

    def drain(self, bucket: str, region: str) -> int:
        client = self._s3(region)
        paginator = client.get_paginator("list_object_versions")
        removed = 0

        try:
            for page in paginator.paginate(Bucket=bucket):
                batch = [
                    {"Key": item["Key"], "VersionId": item["VersionId"]}
                    for item in page.get("Versions", []) + page.get("DeleteMarkers", [])
                ]
                # delete_objects accepts at most 1000 keys
                for start in range(0, len(batch), 1000):
                    chunk = batch[start:start + 1000]
                    response = client.delete_objects(
                        Bucket=bucket, Delete={"Objects": chunk, "Quiet": True}
                    )
                    errors = response.get("Errors", [])
                    if errors:
                        first = errors[0]
                        raise PlatformOperationFailed(
                            f"Could not delete {len(errors)} object(s) from s3://{bucket}: "
                            f"{first.get('Key')}: {first.get('Message')}",
                            step="drain",
                            status=first.get("Code"),
                        )
                    removed += len(chunk)
        except (ClientError, BotoCoreError) as e:
            raise PlatformOperationFailed(
                f"Could not drain s3://{bucket}: {_error_message(e)}",
                step="drain",
                status=_error_code(e),
            ) from e

        logger.info("Drained %d object version(s) from s3://%s", removed, bucket)
        return removed

    def remove_policy(self, bucket: str, region: str) -> None:
        try:
            self._s3(region).delete_bucket_policy(Bucket=bucket)
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) not in ("NoSuchBucketPolicy", "NoSuchBucket"):
                raise PlatformOperationFailed(
                    f"Could not remove the policy of s3://{bucket}: {_error_message(e)}",
                    step="destroy",
                    status=_error_code(e),
                ) from e

    def delete(self, bucket: str, region: str) -> None:
        try:
            self._s3(region).delete_bucket(Bucket=bucket)
        except (ClientError, BotoCoreError) as e:
            raise PlatformOperationFailed(
                f"Could not delete s3://{bucket}: {_error_message(e)}",
                step="destroy",
                status=_error_code(e),
            ) from e


class EcrRegistry(ContainerRegistry):
    """ECR repositories in one account and region."""

    def __init__(self, clients: _ClientCache, account_id: str, region: str):
        self.clients = clients
        self.account_id = account_id
        self.region = region

    def list_images(self, repository: str) -> list[ImageRecord]:
        paginator = self.clients.get("ecr", self.region).get_paginator("describe_images")
        images = []
        try:
            for page in paginator.paginate(repositoryName=repository):
                for detail in page.get("imageDetails", []):
                    images.append(
                        ImageRecord(
                            tags=tuple(detail.get("imageTags", [])),
                            pushed_at=detail["imagePushedAt"],
                            digest=detail.get("imageDigest"),
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            if _error_code(e) == "RepositoryNotFoundException":
                raise ArtifactNotFound(
                    f"Repository '{repository}' does not exist", repository=repository
                ) from e
            raise RegistryResolutionFailed(
                f"Could not list images of '{repository}': {_error_message(e)}", repository=repository
            ) from e
        return images

    def registry_host(self, repository: str) -> str:
        return f"{self.account_id}.dkr.ecr.{self.region}.amazonaws.com"


class CdkToolkit(BootstrapToolkit):
    """Runs ``cdk bootstrap aws://ACCOUNT/REGION``."""

    def __init__(self, command: list[str] | None = None, profile: str | None = None,
                 cwd: str | Path | None = None):
        self.command = list(command or ["npx", "cdk"])
        self.profile = profile
        self.cwd = cwd

    def bootstrap(self, account: str, region: str) -> None:
        cmd = self.command + ["bootstrap", f"aws://{account}/{region}"]
        if self.profile:
            cmd.extend(["--profile", self.profile])

        logger.info("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, cwd=self.cwd, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise BootstrapFailed(
                f"Bootstrap command '{cmd[0]}' not found; install Node.js and the AWS CDK",
                region=region,
            ) from e
        except subprocess.CalledProcessError as e:
            message = f"Bootstrap command failed: {' '.join(cmd)}"
            if e.stderr:
                message += f"\n{e.stderr.strip()}"
            raise BootstrapFailed(message, region=region) from e

        if result.stdout:
            logger.debug(result.stdout)


class AWSProvider(Provider):
    """
    AWS cloud provider.

    Example:
        config = DeploymentConfig(account_id="123456789012",
                                  default_region="ca-central-1",
                                  domain_root="example.com")
        provider = AWSProvider(config)
        provider.verify_credentials()
    """

    def __init__(self, config: DeploymentConfig, session: boto3.Session | None = None,
                 cdk_command: list[str] | None = None):
        super().__init__(config)
        if session is None:
            session = boto3.Session(profile_name=config.profile) if config.profile else boto3.Session()
        self.session = session
        self._clients = _ClientCache(session)
        self._platform = CloudFormationPlatform(
            self._clients, tags={"managed-by": "moraine", "service": config.service_name}
        )
        self._object_store = S3ObjectStore(self._clients)
        self._registry = EcrRegistry(
            self._clients, config.account_id or "", config.default_region or "us-east-1"
        )
        self._toolkit = CdkToolkit(command=cdk_command, profile=config.profile)

    @property
    def platform(self) -> CloudFormationPlatform:
        return self._platform

    @property
    def object_store(self) -> S3ObjectStore:
        return self._object_store

    @property
    def registry(self) -> EcrRegistry:
        return self._registry

    @property
    def toolkit(self) -> CdkToolkit:
        return self._toolkit

    def verify_credentials(self) -> str:
        region = self.config.default_region or "us-east-1"
        try:
            identity = self._clients.get("sts", region).get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise ConfigurationError(
                f"AWS credentials are missing or invalid: {e}", step="verify-credentials"
            ) from e

        account = identity["Account"]
        if self.config.account_id and account != self.config.account_id:
            raise ConfigurationError(
                f"Credentials belong to account {account}, "
                f"but the target account is {self.config.account_id}",
                step="verify-credentials",
            )
        logger.info("AWS credentials verified for account %s", account)
        return account

    def get_provider_type(self) -> str:
        return "aws"
