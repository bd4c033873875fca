"""
Rehearse a deploy and teardown of the standard plan against the in-memory
provider.

This demonstrates:
1. Outputs of one stack flowing into the parameters of the next
2. A failed stack skipping its dependents but not independent stacks
3. Teardown in reverse order, draining the frontend bucket first
"""

from datetime import datetime, timezone
from pathlib import Path

from moraine.config import DeploymentConfig, RetryPolicy
from moraine.core import DeploymentPlan, standard_plan
from moraine.operations import DeploymentOrchestrator, TeardownCoordinator
from moraine.providers.local import LocalProvider


class EchoBuilder:
    """Prints the build it would run instead of running it."""

    def run(self, stack, parameters):
        if stack.descriptor.build is None:
            return None
        env = {var: parameters[param] for var, param in stack.descriptor.build.env.items()}
        print(f"  (build {stack.name} with {env})")
        return Path(stack.descriptor.build.artifact_dir or ".")


config = DeploymentConfig(
    account_id="123456789012",
    default_region="ca-central-1",
    domain_root="example.com",
    secrets={"OPENAI_API_KEY": "sk", "PINECONE_API_KEY": "pc", "LANGSMITH_API_KEY": "ls"},
    state_file=Path(".moraine/rehearsal.yaml"),
    retry=RetryPolicy(interval_seconds=0, max_attempts=10),
)

provider = LocalProvider(config, latency=2)
provider.platform.set_outputs("resume-bot-certificate", {"CertificateArn": "arn:aws:acm:us-east-1:1:certificate/x"})
provider.platform.set_outputs("resume-bot-backend", {"APIEndpoint": "https://api.example.com/"})
provider.platform.add_resource(
    "resume-bot-frontend", "WebsiteBucket", "AWS::S3::Bucket", "resume-bot-frontend-123456789012-ca-central-1"
)
provider.registry.push("resume-bot-backend", ["latest", "v7"], pushed_at=datetime.now(timezone.utc))

# ============================================================================
# Deploy
# ============================================================================
print("Deploy")
print("=" * 60)

plan = DeploymentPlan(standard_plan(), config)
report = DeploymentOrchestrator.from_provider(plan, provider, builder=EchoBuilder()).run()

print(f"✓ {report.status.value}")
for name in report.order:
    print(f"  {name}: {report.results[name].status.value}")
print(f"  Frontend parameters: {plan.get('resume-bot-frontend').parameters}")

# ============================================================================
# A failing backend
# ============================================================================
print("\nRedeploy with a failing backend")
print("=" * 60)

provider.platform.fail_deploy["resume-bot-backend"] = "Service did not stabilize"
provider.registry.push("resume-bot-backend", ["v8"], pushed_at=datetime.now(timezone.utc))
plan = DeploymentPlan(standard_plan(), config)
report = DeploymentOrchestrator.from_provider(plan, provider, builder=EchoBuilder()).run()

print(f"✗ {report.status.value}")
for result in report.failed:
    print(f"  failed: {result.name} at {result.step}")
for result in report.skipped:
    print(f"  skipped: {result.name} ({result.skipped_because})")
del provider.platform.fail_deploy["resume-bot-backend"]

# ============================================================================
# Teardown
# ============================================================================
print("\nTeardown")
print("=" * 60)

provider.object_store.create_bucket("resume-bot-frontend-123456789012-ca-central-1", ["index.html"])
teardown = TeardownCoordinator.from_provider(plan, provider).run()

print(f"✓ complete: {teardown.complete}")
for name in teardown.order:
    result = teardown.results[name]
    print(f"  {name}: {result.status.value} drained={result.drained}")
