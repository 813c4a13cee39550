"""NLB port controller (nlbc).

Exposes NodePort services of a cluster through a fixed pool of network load
balancers. Every opted-in service gets one (load balancer, port) pair, a
listener on that port and a target group forwarding to the service's node
port. The chosen pair is written back onto the service as annotations.

The allocation table is kept in memory only and is rebuilt from those
annotations after a restart.
"""
