from datetime import date

from clinicavoice import store as docstore
from clinicavoice.visits import compute_visit_frequency, get_visit_frequency, months_between


def _visit(day, status='completed', time='09:00'):
    return {'date': day, 'time': time, 'status': status}


def test_no_completed_visits_gives_zero_result():
    result = compute_visit_frequency([_visit('2024-01-01', 'cancelled')], date(2024, 6, 15))
    assert result == {'lastVisitDate': None, 'annualVisitCount': 0, 'needsFollowUp': False}


def test_last_visit_and_annual_count():
    today = date(2024, 6, 15)
    visits = [
        _visit('2023-06-14'),
        _visit('2023-06-15'),
        _visit('2024-03-01', time='08:00'),
        _visit('2024-03-01', time='16:00'),
        _visit('2024-05-20', status='no-show'),
    ]
    result = compute_visit_frequency(visits, today)
    assert result['lastVisitDate'] == '2024-03-01'
    assert result['annualVisitCount'] == 3
    assert result['needsFollowUp'] is False


def test_follow_up_uses_calendar_months_not_days():
    # Dec 31 to Jul 1 is seven calendar months even though it is 182 days
    assert compute_visit_frequency([_visit('2023-12-31')], date(2024, 7, 1))['needsFollowUp'] is True
    # Jan 1 to Jul 31 is six calendar months despite 212 days
    assert compute_visit_frequency([_visit('2024-01-01')], date(2024, 7, 31))['needsFollowUp'] is False


def test_leap_day_window_maps_to_feb_28():
    result = compute_visit_frequency(
        [_visit('2023-02-28'), _visit('2023-02-27')], date(2024, 2, 29)
    )
    assert result['annualVisitCount'] == 1


def test_months_between():
    assert months_between(date(2023, 11, 30), date(2024, 2, 1)) == 3


def test_get_visit_frequency_is_scoped_to_clinician(store):
    store.put(docstore.APPOINTMENTS, {'id': 'a1', 'userId': 'c1', 'patientId': 'p1', **_visit('2024-06-01')})
    store.put(docstore.APPOINTMENTS, {'id': 'a2', 'userId': 'c2', 'patientId': 'p1', **_visit('2024-06-10')})

    result = get_visit_frequency(store, 'c1', 'p1', date(2024, 6, 15))
    assert result['lastVisitDate'] == '2024-06-01'
    assert result['annualVisitCount'] == 1


def test_get_visit_frequency_swallows_store_failures():
    class BrokenStore:
        def query(self, *args, **kwargs):
            raise RuntimeError('store unavailable')

    result = get_visit_frequency(BrokenStore(), 'c1', 'p1', date(2024, 6, 15))
    assert result == {'lastVisitDate': None, 'annualVisitCount': 0, 'needsFollowUp': False}
