"""
test_config.py - Tests for configuration.
"""

import pytest

from finsync.config import SYNC_TABLE_ORDER, PARENT_REFERENCES, SyncConfig


class TestSyncConfig:
    def test_defaults(self):
        config = SyncConfig()
        assert config.batch_size == 50
        assert config.stall_attempts == 8
        assert config.backoff_seconds(20) == config.max_delay_seconds

    def test_from_env(self):
        config = SyncConfig.from_env({
            "FINSYNC_BATCH_SIZE": "10",
            "FINSYNC_MAX_DELAY_SECONDS": "30.5",
            "UNRELATED": "1",
        })
        assert config.batch_size == 10
        assert config.max_delay_seconds == 30.5
        assert config.base_delay_seconds == 1.0

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            SyncConfig(batch_size=0)
        with pytest.raises(ValueError):
            SyncConfig(base_delay_seconds=10.0, max_delay_seconds=1.0)

    def test_parents_ordered_before_children(self):
        for child, (_, parent) in PARENT_REFERENCES.items():
            assert SYNC_TABLE_ORDER.index(parent) < SYNC_TABLE_ORDER.index(child)
