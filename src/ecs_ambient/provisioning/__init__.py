"""Provisioning and teardown of the EKS, ECS, IAM, network and Istio resources."""
