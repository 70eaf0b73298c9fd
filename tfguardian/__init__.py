"""Terraform pull-request workflows: planning, status comments, permissions and IAM cleanup."""

__version__ = "0.1.0"