"""
Shared fixtures: configuration, an in-memory provider and the standard site.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from moraine.config import DeploymentConfig, RetryPolicy
from moraine.core import DeploymentPlan, StackDescriptor, standard_plan
from moraine.providers.local import LocalProvider

ACCOUNT = "123456789012"
REGION = "ca-central-1"
DOMAIN = "example.com"

SECRETS = {
    "OPENAI_API_KEY": "sk-test",
    "PINECONE_API_KEY": "pc-test",
    "LANGSMITH_API_KEY": "ls-test",
}

CERTIFICATE = "resume-bot-certificate"
BACKEND = "resume-bot-backend"
FRONTEND = "resume-bot-frontend"
FRONTEND_BUCKET = f"resume-bot-frontend-{ACCOUNT}-{REGION}"


class RecordingBuilder:
    """Stands in for BuildRunner; remembers what it was asked to build."""

    def __init__(self):
        self.calls = []

    def run(self, stack, parameters):
        if stack.descriptor.build is None:
            return None
        env = {var: parameters[param] for var, param in stack.descriptor.build.env.items()}
        self.calls.append((stack.name, env))
        return Path(stack.descriptor.build.artifact_dir or ".")


@pytest.fixture
def config(tmp_path):
    """Complete configuration with polling that never really waits."""
    return DeploymentConfig(
        account_id=ACCOUNT,
        default_region=REGION,
        domain_root=DOMAIN,
        secrets=dict(SECRETS),
        state_file=tmp_path / "state.yaml",
        retry=RetryPolicy(interval_seconds=0, max_attempts=5),
    )


@pytest.fixture
def provider(config):
    """In-memory provider where every operation takes one extra status poll."""
    return LocalProvider(config, latency=1)


@pytest.fixture
def builder():
    return RecordingBuilder()


def simple(name, **kwargs):
    """Descriptor shorthand for graph-shaped tests."""
    return StackDescriptor(name=name, **kwargs)


def prepare_standard_site(provider):
    """Outputs, images and resources the standard plan expects."""
    platform = provider.platform
    platform.set_outputs(CERTIFICATE, {"CertificateArn": "arn:aws:acm:us-east-1:123:certificate/abc"})
    platform.set_outputs(
        BACKEND,
        lambda parameters: {
            "LoadBalancerDNS": "backend-123.ca-central-1.elb.amazonaws.com",
            "APIEndpoint": f"https://api.{DOMAIN}/",
            "ServiceName": parameters["ServiceName"],
        },
    )
    platform.set_outputs(
        FRONTEND,
        lambda parameters: {
            "WebsiteURL": f"https://{parameters['DomainName']}",
            "CloudFrontURL": "https://d111111abcdef8.cloudfront.net",
            "DistributionId": "E2QWRUHAPOMQZL",
            "S3BucketName": parameters["BucketName"],
            "CertificateArn": parameters["CertificateArnParam"],
            "DomainName": parameters["DomainName"],
        },
    )
    platform.add_resource(FRONTEND, "WebsiteBucket", "AWS::S3::Bucket", FRONTEND_BUCKET)
    platform.add_resource(FRONTEND, "WebsiteBucketPolicy", "AWS::S3::BucketPolicy", FRONTEND_BUCKET)
    provider.registry.push(
        "resume-bot-backend", ["v2"], pushed_at=datetime(2024, 5, 1, tzinfo=timezone.utc)
    )
    provider.registry.push(
        "resume-bot-backend", ["latest", "v3"], pushed_at=datetime(2024, 6, 1, tzinfo=timezone.utc)
    )


@pytest.fixture
def standard_site(provider, config):
    """The standard three-stack plan wired to a prepared local provider."""
    prepare_standard_site(provider)
    return DeploymentPlan(standard_plan(), config)
