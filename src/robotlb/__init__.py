# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Hetzner Cloud load balancers for Kubernetes services on bare-metal nodes.

The controller watches `Service` objects of type `LoadBalancer` and keeps a
matching cloud load balancer in sync with the service's ports, annotations
and the nodes currently able to serve it.
"""

__version__ = "0.1.0"
