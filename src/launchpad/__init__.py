"""Launchpad deployment pipeline engine."""

from .engine import DeploymentEngine
from .models import DeploymentRequest, PipelineResult, PipelineStatus

__all__ = ["DeploymentEngine", "DeploymentRequest", "PipelineResult", "PipelineStatus"]
