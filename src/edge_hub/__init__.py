"""
Store Edge Hub

This service runs on a small on-premise machine at each store, between the
cloud control plane and the LAN-connected POS terminals. It keeps the store
operational while the cloud is unreachable: locally-originated changes are
queued durably and uploaded once the cloud is back, terminals coordinate
edits on shared checks through advisory locks, and software packages pushed
from the cloud are downloaded, verified and installed without operator steps.
"""

__version__ = '0.1.0'
