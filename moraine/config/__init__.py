"""
Configuration models for moraine deployments.
"""

from moraine.config.deployment import DeploymentConfig, RetryPolicy

__all__ = ["DeploymentConfig", "RetryPolicy"]
