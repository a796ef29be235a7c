import sys
import os
import time
import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
from loadgen import (
    MetricsStorage, MetricsRecord, ControlTarget, RateSample, SyntheticLoadState,
    build_metrics_record, decompose
)


def make_record(timestamp, cpu_total=40.0, cpu_synthetic=20.0, bw_total=12.0, bw_synthetic=10.0):
    return MetricsRecord(timestamp=timestamp, cpu_target=50.0, cpu_organic=cpu_total - cpu_synthetic,
                         cpu_synthetic=cpu_synthetic, cpu_total=cpu_total, bw_target=10.0,
                         bw_organic=bw_total - bw_synthetic, bw_synthetic=bw_synthetic, bw_total=bw_total)


class TestMetricsStorage:
    @pytest.fixture
    def temp_db(self):
        """Create a temporary database file for testing."""
        with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
            db_path = f.name
        yield db_path
        # Cleanup
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(db_path + suffix):
                os.unlink(db_path + suffix)

    def test_init_creates_database(self, temp_db):
        storage = MetricsStorage(temp_db)
        assert storage.db_path == temp_db
        assert os.path.exists(temp_db)

    def test_init_creates_missing_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "metrics.db"
        MetricsStorage(str(db_path))
        assert db_path.exists()

    def test_store_and_read_back(self, temp_db):
        storage = MetricsStorage(temp_db)
        now = time.time()
        assert storage.store_record(make_record(now - 2, cpu_total=30.0))
        assert storage.store_record(make_record(now - 1, cpu_total=50.0))

        recent = storage.get_recent(limit=10)
        assert [r.cpu_total for r in recent] == [30.0, 50.0]
        assert isinstance(recent[0], MetricsRecord)
        assert storage.get_sample_count() == 2

    def test_get_recent_limit(self, temp_db):
        storage = MetricsStorage(temp_db)
        now = time.time()
        for i in range(5):
            storage.store_record(make_record(now - 5 + i, cpu_total=float(i)))
        assert [r.cpu_total for r in storage.get_recent(limit=2)] == [3.0, 4.0]

    def test_summary(self, temp_db):
        storage = MetricsStorage(temp_db)
        now = time.time()
        storage.store_record(make_record(now - 2, cpu_total=30.0, cpu_synthetic=10.0))
        storage.store_record(make_record(now - 1, cpu_total=50.0, cpu_synthetic=30.0))

        summary = storage.get_summary()
        assert summary['samples'] == 2
        assert summary['avg_cpu_total'] == pytest.approx(40.0)
        assert summary['avg_cpu_synthetic'] == pytest.approx(20.0)
        assert summary['avg_cpu_organic'] == pytest.approx(20.0)

    def test_summary_empty(self, temp_db):
        assert MetricsStorage(temp_db).get_summary() is None

    def test_cleanup_old(self, temp_db):
        storage = MetricsStorage(temp_db)
        now = time.time()
        storage.store_record(make_record(now - 10 * 24 * 3600))
        storage.store_record(make_record(now - 60))

        assert storage.cleanup_old(days_to_keep=7) == 1
        assert storage.get_sample_count(days_back=30) == 1

    def test_degrades_after_consecutive_failures(self, temp_db):
        storage = MetricsStorage(temp_db)
        with patch('loadgen.sqlite3.connect', side_effect=sqlite3.OperationalError("disk I/O error")):
            for _ in range(storage.max_consecutive_failures):
                assert storage.store_record(make_record(time.time())) is False
        assert storage.is_storage_degraded()
        assert storage.get_storage_status()['is_degraded'] is True

        # A successful write clears the degradation
        assert storage.store_record(make_record(time.time()))
        assert not storage.is_storage_degraded()

    def test_build_metrics_record(self):
        target = ControlTarget(50.0, 10.0, 90.0, 1000.0, 5.0)
        sample = RateSample(cpu_percent=45.0, rx_mbps=12.0, tx_mbps=0.5, total_mbps=12.5, primed=True)
        breakdown = decompose(sample, SyntheticLoadState(cpu_percent=20.0, bw_total_mbps=10.0, bw_rx_mbps=10.0))
        record = build_metrics_record(target, breakdown, timestamp=1234.0)
        assert record == MetricsRecord(1234.0, 50.0, 25.0, 20.0, 45.0, 10.0, 2.5, 10.0, 12.5)
