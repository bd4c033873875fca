"""
The standard plan: certificate, backend and frontend stacks.

Names are derived from the service naming root, so two services can share
an account without colliding.
"""

from moraine.core.stack import BuildStep, StackDescriptor

BACKEND_SECRETS = {
    "OpenAiApiKey": "OPENAI_API_KEY",
    "PineconeApiKey": "PINECONE_API_KEY",
    "LangsmithApiKey": "LANGSMITH_API_KEY",
}


def standard_plan() -> list[StackDescriptor]:
    """
    Descriptors for the standard three-stack site.

    - certificate: TLS certificate, pinned to the CDN's certificate region
    - backend: container service behind an HTTPS API endpoint
    - frontend: static site bucket and CDN, built against the backend endpoint
    """
    certificate = StackDescriptor(
        name="{service}-certificate",
        region="{certificate_region}",
        description="TLS certificate for the CDN (DNS validated)",
        outputs=["CertificateArn"],
        parameters={"DomainName": "{domain_root}"},
    )

    backend = StackDescriptor(
        name="{service}-backend",
        description="Backend container service with load balancer and API endpoint",
        outputs=["LoadBalancerDNS", "APIEndpoint", "ServiceName"],
        parameters={"ServiceName": "{service}"},
        artifacts={"ImageUri": "{service}-backend"},
        secrets=dict(BACKEND_SECRETS),
    )

    frontend = StackDescriptor(
        name="{service}-frontend",
        description="Static frontend bucket behind a CDN distribution",
        outputs=[
            "WebsiteURL",
            "CloudFrontURL",
            "DistributionId",
            "S3BucketName",
            "CertificateArn",
            "DomainName",
        ],
        parameters={
            "DomainName": "{domain_root}",
            "BucketName": "{service}-frontend-{account}-{region}",
        },
        inputs={
            "CertificateArnParam": "{service}-certificate.CertificateArn",
            "ApiEndpoint": "{service}-backend.APIEndpoint",
        },
        build=BuildStep(
            command=["npm", "run", "build"],
            cwd="../{service}-frontend",
            env={"VITE_API_URL": "ApiEndpoint"},
            artifact_dir="dist",
        ),
        drain=True,
        retain_on_force=["WebsiteBucketPolicy"],
    )

    return [certificate, backend, frontend]
