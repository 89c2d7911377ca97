"""
llmvm — provision a single-VM language-model workload on Google Cloud.

Renders a private VPC network, a subnet, two firewall rules and one
Compute Engine instance from a few operator inputs, then converges the
live project to that description through the Compute Engine API.
"""

import os

__version__ = "0.1.0"

LLMVM_HOME = os.environ.get("LLMVM_HOME", "~/.llmvm")
