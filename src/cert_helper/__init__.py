"""
cert-helper: provision and audit the X.509 trust material of a cluster.

Pipeline:
    1. generator  - node keys, options.cnf and CSRs from a node registry
    2. authority  - root (and optional intermediate) CA, batch signing
    3. arrange    - node.key / node.crt / web.pem / ca.crt per node
    4. verify     - independent re-check of everything above
"""

__version__ = "0.1.0"
