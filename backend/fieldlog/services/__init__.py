# Services package init
"""
FieldLog Backend: Services Layer
==================================

Service Inventory:
    - VersionStore (abstract) / SqlVersionStore: versioned key/value store
      with multi-head conflict tracking
    - validation:  request body decoding and observation field rules
    - migration:   upgrades legacy observation shapes to the current schema
    - ObservationService: create/get/list/update/delete/convert
    - ReplicationEngine (abstract) / PeerReplicationEngine: archive file
      and peer-to-peer replication sessions
    - SyncOrchestrator: turns replication sessions into event streams

Services know nothing about HTTP; routes resolve them from app.state.
"""
