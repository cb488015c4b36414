"""Key-value storage for the operation service.

- kv_store: async get/set wrapper over Redis (or memory), scoped per deployment
- artifacts: computed outputs (CSV tables, JSON blobs) stored under derived keys
"""
