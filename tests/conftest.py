import pytest

from sqlpool.config import Config
from sqlpool.warehouse import Warehouse


def small_config(**sections) -> Config:
    """Defaults-only configuration with a small pool"""
    overrides = {
        'distribution': {'distributions': 8, 'compute_nodes': 2},
        'storage': {'columnstore': {'max_rowgroup_rows': 50, 'bulk_load_threshold': 40}},
        'execution': {'broadcast_row_threshold': 100},
        'logging': {'level': 'DEBUG'},
    }
    for name, values in sections.items():
        overrides.setdefault(name, {}).update(values)
    return Config(config_dir=None, overrides=overrides)


class FakeClock:
    """Settable time source for the result cache"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def config():
    return small_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def warehouse(config, clock):
    return Warehouse(config, clock=clock)


@pytest.fixture
def admin(warehouse):
    return warehouse.open_session('sqladmin')


async def run(warehouse, session, sql):
    """Execute one statement on a session"""
    return await warehouse.execute(session.session_id, sql)


async def load_sales(warehouse, session, rows: int = 200):
    """FactSales (HASH on sale_id, partitioned by year) plus a replicated DimRegion"""
    await run(warehouse, session, """
        CREATE TABLE DimRegion (region_id INT NOT NULL, region_name VARCHAR(32))
        WITH (DISTRIBUTION = REPLICATE, CLUSTERED INDEX (region_id))""")
    await run(warehouse, session, """
        CREATE TABLE FactSales (sale_id INT NOT NULL, region_id INT, customer_id INT,
                                amount DECIMAL(12, 2), sale_year INT)
        WITH (DISTRIBUTION = HASH(sale_id), CLUSTERED COLUMNSTORE INDEX,
              PARTITION (sale_year RANGE RIGHT FOR VALUES (2022, 2023, 2024)))""")
    await run(warehouse, session,
              "INSERT INTO DimRegion VALUES (1, 'North'), (2, 'South'), (3, 'East'), (4, 'West')")
    values = ', '.join(f"({i}, {i % 4 + 1}, {i % 25}, {i % 50}.50, {2021 + i % 4})"
                       for i in range(1, rows + 1))
    await run(warehouse, session, f"INSERT INTO FactSales VALUES {values}")
