"""
Demo script - workload isolation and result-set caching on one warehouse
"""

import asyncio
import logging

from sqlpool import Config, Warehouse


SETUP = [
    """CREATE TABLE DimRegion (region_id INT NOT NULL, region_name VARCHAR(32))
       WITH (DISTRIBUTION = REPLICATE, CLUSTERED INDEX (region_id))""",
    """CREATE TABLE FactSales (sale_id INT NOT NULL, region_id INT, amount DECIMAL(12, 2),
       sale_year INT)
       WITH (DISTRIBUTION = HASH(sale_id), CLUSTERED COLUMNSTORE INDEX,
             PARTITION (sale_year RANGE RIGHT FOR VALUES (2022, 2023, 2024)))""",
    "INSERT INTO DimRegion VALUES (1, 'North'), (2, 'South'), (3, 'East'), (4, 'West')",
]

REPORT = """SELECT r.region_name, COUNT(*) AS sales, SUM(f.amount) AS revenue
            FROM FactSales f JOIN DimRegion r ON f.region_id = r.region_id
            WHERE f.sale_year >= 2023
            GROUP BY r.region_name
            ORDER BY r.region_name"""


def print_rows(result):
    print("  " + " | ".join(result.result.columns))
    for row in result.result.rows:
        print("  " + " | ".join(str(v) for v in row))


async def main():
    logging.basicConfig(level=logging.WARNING)

    print("=" * 60)
    print("Dedicated SQL Pool Demo")
    print("=" * 60)

    # Initialize warehouse
    print("\nInitializing warehouse...")
    warehouse = Warehouse(Config(overrides={'distribution': {'distributions': 60,
                                                             'compute_nodes': 2}}))
    admin = warehouse.open_session('sqladmin')

    print("\nCreating tables...")
    print("-" * 60)
    for sql in SETUP:
        await warehouse.execute(admin.session_id, sql)
    values = ", ".join(
        f"({i}, {i % 4 + 1}, {(i * 37) % 500 + 0.99}, {2021 + i % 4})" for i in range(1, 2001))
    result = await warehouse.execute(admin.session_id, f"INSERT INTO FactSales VALUES {values}")
    print(f"FactSales: {result.result.rows_affected} rows, skew "
          f"{warehouse.catalog.get('FactSales').skew_percentage():.1f}%")

    # Workload isolation for the CEO
    print("\nConfiguring workload management...")
    print("-" * 60)
    await warehouse.execute(admin.session_id, """
        CREATE WORKLOAD GROUP CEODemo WITH (
            MIN_PERCENTAGE_RESOURCE = 26,
            CAP_PERCENTAGE_RESOURCE = 100,
            REQUEST_MIN_RESOURCE_GRANT_PERCENT = 3.25)""")
    await warehouse.execute(admin.session_id, """
        CREATE WORKLOAD CLASSIFIER CEO WITH (
            WORKLOAD_GROUP = 'CEODemo', MEMBERNAME = 'ceo', IMPORTANCE = HIGH)""")
    for group in warehouse.governor.group_stats():
        if group['name'] == 'CEODemo':
            print(f"CEODemo: min {group['effective_min_percentage_resource']}%, "
                  f"cap {group['effective_cap_percentage_resource']}%, "
                  f"max concurrency {group['max_concurrency']}")

    # Result-set caching
    await warehouse.execute(admin.session_id,
                            f"ALTER DATABASE {warehouse.database_name} SET RESULT_SET_CACHING ON")

    ceo = warehouse.open_session('ceo')
    print("\nRunning the CEO report twice...")
    print("-" * 60)
    runs = []
    for attempt in (1, 2):
        result = await warehouse.execute(ceo.session_id, REPORT)
        request = warehouse.get_request(result.request_id)
        runs.append(request.request_id)
        print(f"Run {attempt}: {request.request_id} group={request.group_name} "
              f"importance={request.importance.label} result_cache_hit={result.result_cache_hit}")
    print_rows(result)

    # Introspection
    print("\nSteps of the first run:")
    print("-" * 60)
    steps = await warehouse.execute(admin.session_id, f"""
        SELECT step_index, operation_type, location_type, row_count
        FROM sys.dm_pdw_request_steps
        WHERE request_id = '{runs[0]}'
        ORDER BY step_index""")
    print_rows(steps)

    print("\nCache space:")
    print("-" * 60)
    print_rows(await warehouse.execute(admin.session_id, "DBCC SHOWRESULTCACHESPACEUSED"))

    print("\nWarehouse status:")
    print("-" * 60)
    status = warehouse.get_status()
    print(f"Requests: {status['requests']}")
    print(f"Cache: {status['cache']}")

    print("\n" + "=" * 60)
    print("Demo complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
