import asyncio
from datetime import datetime, timedelta

import pytest

from sqlpool.core import Importance, Request
from sqlpool.errors import AdmissionTimeout, ConfigurationError
from sqlpool.scheduler import AdmissionDecision, ResourceGovernor, WorkloadGroup, to_basis_points

START = datetime(2024, 3, 1, 12, 0)


def group(name, minimum, cap, grant, **extra):
    options = {'MIN_PERCENTAGE_RESOURCE': minimum, 'CAP_PERCENTAGE_RESOURCE': cap,
               'REQUEST_MIN_RESOURCE_GRANT_PERCENT': grant}
    options.update(extra)
    return WorkloadGroup.from_options(name, options)


def make_request(n, offset=0):
    return Request(f"QID{n}", 'SID1', 'tester', 'SELECT 1', START + timedelta(seconds=offset))


@pytest.fixture
def governor():
    return ResourceGovernor([group('CEODemo', 26, 100, 3.25)])


class TestGroups:

    def test_basis_points(self):
        assert to_basis_points(3.25) == 325
        assert to_basis_points('26') == 2600
        with pytest.raises(ConfigurationError):
            to_basis_points(3.255)
        with pytest.raises(ConfigurationError):
            to_basis_points('lots')

    @pytest.mark.parametrize('args', [
        (120, 100, 3),
        (20, 10, 3),
        (2, 100, 3),
        (0, 100, 0),
        (0, 5, 10),
    ])
    def test_invalid_groups(self, args):
        with pytest.raises(ConfigurationError):
            group('Bad', *args).validate()

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError):
            group('Bad', 0, 100, 3, CONCURRENCY=4)

    def test_max_grant_defaults_to_min(self):
        assert group('g', 0, 100, 3).request_max_grant == 300


class TestCapacity:

    def test_max_concurrency(self, governor):
        assert governor.effective_cap('CEODemo') == 10000
        assert governor.max_concurrency('ceodemo') == 30

    def test_other_minimums_shrink_the_effective_cap(self, governor):
        governor.create_group(group('Loads', 40, 100, 10))
        assert governor.effective_cap('CEODemo') == 6000
        assert governor.max_concurrency('CEODemo') == 18
        assert governor.effective_cap('Loads') == 7400

    def test_total_minimum_limited_to_100_percent(self, governor):
        governor.create_group(group('Big', 70, 100, 10))
        with pytest.raises(ConfigurationError):
            governor.create_group(group('TooMuch', 10, 100, 10))

    def test_duplicate_group(self, governor):
        with pytest.raises(ConfigurationError):
            governor.create_group(group('ceodemo', 0, 100, 3))

    def test_group_stats(self, governor):
        stats = {s['name']: s for s in governor.group_stats()}
        assert stats['CEODemo']['max_concurrency'] == 30
        assert stats['CEODemo']['effective_cap_percentage_resource'] == 100.0
        assert stats['CEODemo']['request_min_resource_grant_percent'] == 3.25


class TestAdmission:

    def test_thirty_first_request_queues(self, governor):
        requests = [make_request(i) for i in range(31)]
        decisions = [governor.try_admit(r, 'CEODemo', Importance.NORMAL) for r in requests]
        assert decisions[:30] == [AdmissionDecision.RUN_IMMEDIATELY] * 30
        assert decisions[30] is AdmissionDecision.QUEUED
        assert requests[0].resource_allocation_percentage == 3.25
        usage = governor.usage('CEODemo')
        assert (usage.granted, usage.running, usage.queued) == (9750, 30, 1)

    def test_release_admits_queued(self, governor):
        requests = [make_request(i) for i in range(31)]
        for r in requests:
            governor.try_admit(r, 'CEODemo', Importance.NORMAL)
        released = governor.release('QID0')
        assert released.basis_points == 325
        assert not governor.is_queued('QID30')
        assert governor.grant_for('QID30') is not None
        assert governor.release('QID0') is None

    def test_unknown_group(self, governor):
        with pytest.raises(ConfigurationError):
            governor.try_admit(make_request(1), 'nope', Importance.NORMAL)

    def test_unused_minimum_is_protected(self):
        governor = ResourceGovernor([group('Reserved', 50, 100, 10), group('Open', 0, 100, 10)])
        admitted = [governor.try_admit(make_request(i), 'Open', Importance.NORMAL)
                    for i in range(6)]
        assert admitted.count(AdmissionDecision.RUN_IMMEDIATELY) == 5
        assert admitted[5] is AdmissionDecision.QUEUED
        reserved = [governor.try_admit(make_request(10 + i), 'Reserved', Importance.NORMAL)
                    for i in range(5)]
        assert reserved == [AdmissionDecision.RUN_IMMEDIATELY] * 5
        assert governor.total_granted() == 10000

    def test_cap_limits_group(self):
        governor = ResourceGovernor([group('Capped', 0, 20, 10)])
        decisions = [governor.try_admit(make_request(i), 'Capped', Importance.NORMAL)
                     for i in range(3)]
        assert decisions[-1] is AdmissionDecision.QUEUED

    def test_grant_grows_to_max_when_idle(self):
        governor = ResourceGovernor([
            group('Elastic', 0, 100, 10, REQUEST_MAX_RESOURCE_GRANT_PERCENT=40)])
        first = make_request(1)
        governor.try_admit(first, 'Elastic', Importance.NORMAL)
        assert first.resource_allocation_percentage == 40.0
        for i in range(2, 4):
            governor.try_admit(make_request(i), 'Elastic', Importance.NORMAL)
        last = make_request(4)
        assert governor.try_admit(last, 'Elastic', Importance.NORMAL) is AdmissionDecision.QUEUED

    def test_queue_released_by_importance(self):
        governor = ResourceGovernor([group('One', 0, 10, 10)])
        governor.try_admit(make_request(0), 'One', Importance.NORMAL)
        governor.try_admit(make_request(1, offset=1), 'One', Importance.LOW)
        governor.try_admit(make_request(2, offset=2), 'One', Importance.HIGH)
        governor.try_admit(make_request(3, offset=3), 'One', Importance.HIGH)
        assert governor.queued_requests() == ['QID2', 'QID3', 'QID1']
        governor.release('QID0')
        assert governor.grant_for('QID2') is not None
        governor.release('QID2')
        assert governor.grant_for('QID3') is not None
        governor.release('QID3')
        assert governor.grant_for('QID1') is not None

    def test_queued_request_blocks_own_group_only(self):
        governor = ResourceGovernor([group('A', 0, 10, 10), group('B', 0, 50, 10)])
        governor.try_admit(make_request(0), 'A', Importance.NORMAL)
        assert governor.try_admit(make_request(1), 'A', Importance.NORMAL) is AdmissionDecision.QUEUED
        assert governor.try_admit(make_request(2), 'B', Importance.NORMAL) is \
            AdmissionDecision.RUN_IMMEDIATELY


class TestAcquire:

    async def test_acquire_waits_for_release(self):
        governor = ResourceGovernor([group('One', 0, 10, 10)])
        await governor.acquire(make_request(0), 'One', Importance.NORMAL)
        waiting = asyncio.create_task(governor.acquire(make_request(1), 'One', Importance.NORMAL))
        await asyncio.sleep(0)
        assert governor.is_queued('QID1')
        governor.release('QID0')
        grant = await asyncio.wait_for(waiting, 1)
        assert grant.request_id == 'QID1'

    async def test_admission_timeout(self):
        governor = ResourceGovernor([group('One', 0, 10, 10)])
        await governor.acquire(make_request(0), 'One', Importance.NORMAL)
        with pytest.raises(AdmissionTimeout):
            await governor.acquire(make_request(1), 'One', Importance.NORMAL, timeout=0.05)
        assert governor.queued_requests() == []
        assert governor.usage('One').queued == 0

    async def test_cancel_while_queued(self):
        governor = ResourceGovernor([group('One', 0, 10, 10)])
        await governor.acquire(make_request(0), 'One', Importance.NORMAL)
        waiting = asyncio.create_task(governor.acquire(make_request(1), 'One', Importance.NORMAL))
        await asyncio.sleep(0)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        assert governor.queued_requests() == []
        governor.release('QID0')
        assert governor.grant_for('QID1') is None

    async def test_withdraw(self):
        governor = ResourceGovernor([group('One', 0, 10, 10)])
        await governor.acquire(make_request(0), 'One', Importance.NORMAL)
        waiting = asyncio.create_task(governor.acquire(make_request(1), 'One', Importance.NORMAL))
        await asyncio.sleep(0)
        assert governor.withdraw('QID1')
        with pytest.raises(asyncio.CancelledError):
            await waiting
        assert not governor.withdraw('QID1')


class TestDropGroup:

    def test_rules(self, governor):
        governor.create_group(group('Temp', 10, 100, 10))
        request = make_request(1)
        governor.try_admit(request, 'Temp', Importance.NORMAL)
        with pytest.raises(ConfigurationError):
            governor.drop_group('Temp')
        governor.release(request.request_id)
        governor.drop_group('temp')
        assert not governor.has_group('Temp')
        with pytest.raises(ConfigurationError):
            governor.drop_group('Temp')

    def test_system_group(self):
        governor = ResourceGovernor([WorkloadGroup('smallrc', request_min_grant=300, is_system=True)])
        with pytest.raises(ConfigurationError):
            governor.drop_group('smallrc')
