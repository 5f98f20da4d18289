"""cloudslot - deployment update orchestrator for cloud service slots."""

__version__ = "0.1.0"

from cloudslot.core.config import Settings
from cloudslot.deploy.models import DeploymentChangeRequest, MutationOutcome
from cloudslot.deploy.mutator import DeploymentMutator

__all__ = ["Settings", "DeploymentChangeRequest", "DeploymentMutator", "MutationOutcome", "__version__"]
