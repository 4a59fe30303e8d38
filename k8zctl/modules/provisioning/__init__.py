"""
Provisioning and upgrade orchestration core.

The provisioners live in ``initial`` and ``upgrade``; they are not
re-exported here so that low-level helpers (``health``, ``errors``) can be
imported without pulling in the whole pipeline.
"""
