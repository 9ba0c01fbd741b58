"""
Tagship - tag-triggered release pipeline for ECS Fargate services.

This package provides the health endpoint served by the container, a
Terraform-driven release pipeline with post-deploy verification, and a CLI
for inspecting releases and issuing manual rollbacks.
"""

__version__ = "0.1.0"
