from sqlpool.core import Column, StorageOrganization
from sqlpool.distribution import (HeapContainer, ClusteredIndexContainer, ColumnstoreContainer,
                                  RowGroupState, ScanPredicate, create_container)

COLUMNS = [Column('k', 'INT'), Column('v', 'VARCHAR')]


def test_create_container_follows_storage():
    assert isinstance(create_container(StorageOrganization.heap(), COLUMNS), HeapContainer)
    assert isinstance(create_container(StorageOrganization.clustered_index('V'), COLUMNS),
                      ClusteredIndexContainer)
    assert isinstance(create_container(StorageOrganization.clustered_columnstore(), COLUMNS),
                      ColumnstoreContainer)


class TestClusteredIndex:

    def make(self):
        container = ClusteredIndexContainer(COLUMNS, [0])
        container.insert([(5, 'e'), (1, 'a'), (None, 'n'), (3, 'c')])
        container.insert([(2, 'b'), (4, 'd')])
        return container

    def test_rows_sorted_nulls_first(self):
        assert [r[0] for r in self.make().snapshot()] == [None, 1, 2, 3, 4, 5]

    def test_seek(self):
        container = self.make()
        assert container.scan([ScanPredicate('k', '=', (3,))]) == [(3, 'c')]
        assert [r[0] for r in container.scan([ScanPredicate('k', '<', (3,))])] == [1, 2]
        assert [r[0] for r in container.scan([ScanPredicate('k', '>=', (4,))])] == [4, 5]
        assert [r[0] for r in container.scan([ScanPredicate('k', 'BETWEEN', (2, 4))])] == [2, 3, 4]
        assert [r[0] for r in container.scan([ScanPredicate('k', 'IN', (5, 1, 9))])] == [1, 5]

    def test_other_column_scans_everything(self):
        assert len(self.make().scan([ScanPredicate('v', '=', ('a',))])) == 6

    def test_delete_positions(self):
        container = self.make()
        container.delete_positions({0, 2})
        assert [r[0] for r in container.snapshot()] == [1, 3, 4, 5]
        assert container.scan([ScanPredicate('k', '=', (3,))]) == [(3, 'c')]


class TestColumnstore:

    def test_trickle_inserts_fill_delta_store(self):
        container = ColumnstoreContainer(COLUMNS, max_rowgroup_rows=10, bulk_load_threshold=100)
        container.insert([(i, 'x') for i in range(25)])
        states = [g.state for g in container.row_groups()]
        assert states == [RowGroupState.COMPRESSED, RowGroupState.COMPRESSED, RowGroupState.OPEN]
        assert container.row_count == 25

    def test_bulk_load_compresses_directly(self):
        container = ColumnstoreContainer(COLUMNS, max_rowgroup_rows=100, bulk_load_threshold=20)
        container.insert([(i, 'x') for i in range(30)])
        groups = container.row_groups()
        assert len(groups) == 1
        assert groups[0].state is RowGroupState.COMPRESSED
        assert groups[0].min_values == (0, 'x') and groups[0].max_values == (29, 'x')

    def test_segment_elimination(self):
        container = ColumnstoreContainer(COLUMNS, max_rowgroup_rows=10, bulk_load_threshold=10)
        container.insert([(i, 'x') for i in range(30)])
        rows = container.scan([ScanPredicate('k', '>=', (25,))])
        assert [r[0] for r in rows] == list(range(20, 30))
        assert len(container.scan()) == 30

    def test_deletes_use_bitmap_and_rebuild_compacts(self):
        container = ColumnstoreContainer(COLUMNS, max_rowgroup_rows=10, bulk_load_threshold=10)
        container.insert([(i, 'x') for i in range(20)])
        container.delete_positions({0, 1, 2})
        group = container.row_groups()[0]
        assert group.total_rows == 10 and len(group.deleted) == 3
        assert container.row_count == 17

        container.rebuild()
        groups = container.row_groups()
        assert [g.total_rows for g in groups] == [10, 7]
        assert all(not g.deleted for g in groups)
        assert sorted(r[0] for r in container.snapshot()) == list(range(3, 20))

    def test_delta_rows_removed_physically(self):
        container = ColumnstoreContainer(COLUMNS, max_rowgroup_rows=100, bulk_load_threshold=100)
        container.insert([(i, 'x') for i in range(5)])
        container.delete_positions({4})
        assert container.row_groups()[0].total_rows == 4

    def test_truncate(self):
        container = ColumnstoreContainer(COLUMNS)
        container.insert([(1, 'a')])
        container.truncate()
        assert container.row_count == 0 and container.snapshot() == []
