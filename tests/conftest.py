from __future__ import annotations

import pytest

from listing_farm.storage_sqlite import CrawlStore


@pytest.fixture
def store(tmp_path):
    s = CrawlStore(str(tmp_path / "farm.db"))
    try:
        yield s
    finally:
        s.close()
