"""Approval chain module for the EPTW core.

Loads chain templates from configuration and resolves the required
approvers for a permit.
"""

from .templates import (
    ChainStep,
    ChainTemplate,
    load_chain_templates,
    parse_chain_config,
    seed_approval_chains,
)
from .resolver import ApprovalChainResolver, ResolvedStep

__all__ = [
    "ChainStep",
    "ChainTemplate",
    "load_chain_templates",
    "parse_chain_config",
    "seed_approval_chains",
    "ApprovalChainResolver",
    "ResolvedStep",
]
