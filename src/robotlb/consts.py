# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Annotation keys, label names and built-in defaults."""

PREFIX = "robotlb"

# Service annotations
LB_NAME_ANN = f"{PREFIX}/balancer"
LB_NETWORK_ANN = f"{PREFIX}/balancer-network"
LB_PRIVATE_IP_ANN = f"{PREFIX}/lb-private-ip"
LB_NODE_SELECTOR_ANN = f"{PREFIX}/node-selector"
LB_CHECK_INTERVAL_ANN = f"{PREFIX}/lb-check-interval"
LB_TIMEOUT_ANN = f"{PREFIX}/lb-timeout"
LB_RETRIES_ANN = f"{PREFIX}/lb-retries"
LB_PROXY_MODE_ANN = f"{PREFIX}/lb-proxy-mode"
LB_LOCATION_ANN = f"{PREFIX}/lb-location"
LB_ALGORITHM_ANN = f"{PREFIX}/lb-algorithm"
LB_TYPE_ANN = f"{PREFIX}/balancer-type"

SERVICE_ANNOTATIONS = (
    LB_NAME_ANN,
    LB_NETWORK_ANN,
    LB_PRIVATE_IP_ANN,
    LB_NODE_SELECTOR_ANN,
    LB_CHECK_INTERVAL_ANN,
    LB_TIMEOUT_ANN,
    LB_RETRIES_ANN,
    LB_PROXY_MODE_ANN,
    LB_LOCATION_ANN,
    LB_ALGORITHM_ANN,
    LB_TYPE_ANN,
)

# Node annotation carrying the address registered for load balancer traffic.
NODE_IP_ANN = f"{PREFIX}/node-ip"

# Labels put on cloud load balancers to correlate them with their service.
OWNER_NAMESPACE_LABEL = f"{PREFIX}/service-namespace"
OWNER_NAME_LABEL = f"{PREFIX}/service-name"

FINALIZER_NAME = f"{PREFIX}/finalizer"
FIELD_MANAGER = PREFIX
CONDITION_TYPE = "LoadBalancerReady"

ALGORITHMS = ("least-connections", "round-robin")

DEFAULT_LB_INTERVAL = 15
DEFAULT_LB_TIMEOUT = 10
DEFAULT_LB_RETRIES = 3
DEFAULT_LB_LOCATION = "hel1"
DEFAULT_LB_TYPE = "lb11"
DEFAULT_LB_ALGORITHM = "least-connections"
