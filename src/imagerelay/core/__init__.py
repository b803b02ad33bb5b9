"""Core functionality for the image relay.

This package holds everything that does not depend on the HTTP layer:

- **RelayConfig / config**: configuration using Pydantic Settings
- **Model families**: per-engine input shaping behind ``family_registry``
- **PredictionOrchestrator**: submit, poll and complete predictions
- **ResultStore**: per-job status map with serialised updates
- **ThumbnailArchiver**: durable local copies of generated images
- **ImagePublisher**: local file to public URL, with embedded fallback

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration, all settings prefixed with IMAGERELAY_
   - Storage paths derived from ``data_dir`` and created on start-up

2. **Remote Layer** (replicate_client.py, publisher.py):
   - Replicate predictions REST API over ``httpx``
   - External image hosts for control images

3. **Generation Layer** (model_families.py, orchestrator.py, result_store.py):
   - Registry of model families (standard, edge, depth, character, illustration)
   - Synchronous polling and asynchronous webhook completion

4. **Storage Layer**:
   - uploads.py: short-lived client uploads
   - archiver.py / thumbnail_store.py: archived outputs and their metadata
   - usage_log.py: SQLite usage log

Usage Example
-------------
    from imagerelay.core import config, family_registry

    family = family_registry.get("standard")
    print(family.display_name, family.version)
"""

from imagerelay.core.config import RelayConfig, config
from imagerelay.core.model_families import ModelFamilyBase, family_registry

__all__ = [
    "ModelFamilyBase",
    "family_registry",
    "RelayConfig",
    "config",
]
