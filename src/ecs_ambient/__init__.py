"""ECS Ambient Mesh demo tooling (ecs-ambient).

Provision, test and tear down Amazon ECS workloads joined to an Istio ambient mesh running on EKS.
"""

__version__ = "0.1.0"
__author__ = "Platform Engineering Team"
__license__ = "Apache-2.0"
