"""Deployment package assembly."""

from .assembler import DeploymentDescriptor, PackageAssembler

__all__ = ["DeploymentDescriptor", "PackageAssembler"]
