from datetime import date

import pytest

from clinicavoice.validation import (
    validate_appointment_data,
    validate_password,
    validate_patient_data,
    validate_time_block_data,
)


def test_patient_required_fields():
    assert validate_patient_data({}) == [
        'firstName is required',
        'lastName is required',
        'dateOfBirth is required',
        'At least one contact method (phone or email) is required',
    ]


def test_patient_format_checks():
    errors = validate_patient_data(
        {
            'firstName': 'A',
            'lastName': 'B',
            'dateOfBirth': '01/02/1990',
            'email': 'not-an-email',
            'gender': 'unknown',
        }
    )
    assert errors == [
        'Invalid email format',
        'Invalid dateOfBirth format. Use YYYY-MM-DD',
        'Invalid gender value',
    ]


def test_patient_update_only_checks_present_fields():
    assert validate_patient_data({'phone': '555'}, is_update=True) == []
    assert validate_patient_data({'email': 'bad'}, is_update=True) == ['Invalid email format']


@pytest.mark.parametrize('duration', [15, 30, 45, 60, 75, 90, 105, 120])
def test_duration_multiples_of_fifteen_are_accepted(duration):
    assert validate_appointment_data({'duration': duration}, is_update=True) == []


@pytest.mark.parametrize(
    'duration, message',
    [
        (0, 'Duration must be a positive number'),
        (-15, 'Duration must be a positive number'),
        ('30', 'Duration must be a positive number'),
        (20, 'Duration must be in 15-minute increments'),
        (7.5, 'Duration must be in 15-minute increments'),
    ],
)
def test_bad_durations_are_rejected(duration, message):
    assert validate_appointment_data({'duration': duration}, is_update=True) == [message]


def test_appointment_required_and_format_messages():
    assert validate_appointment_data({}) == [
        'patientId is required',
        'date is required',
        'time is required',
        'type is required',
    ]
    errors = validate_appointment_data(
        {'patientId': 'p', 'date': '2024-13', 'time': '25:00', 'type': 'checkup', 'status': 'done'}
    )
    assert errors == [
        'Invalid date format. Use YYYY-MM-DD',
        'Invalid time format. Use HH:MM',
        'Invalid appointment type. Must be: consultation, follow-up, procedure, or urgent',
        'Invalid status. Must be: scheduled, confirmed, completed, cancelled, or no-show',
    ]


def test_past_dates_rejected_on_create_only():
    data = {'patientId': 'p', 'date': '2024-06-14', 'time': '09:00', 'type': 'consultation'}
    today = date(2024, 6, 15)
    assert validate_appointment_data(data, today=today) == ['Cannot schedule appointments in the past']
    assert validate_appointment_data(dict(data, date='2024-06-15'), today=today) == []
    assert validate_appointment_data(data, is_update=True, today=today) == []


def test_time_block_messages():
    assert validate_time_block_data({}) == [
        'date is required',
        'startTime is required',
        'endTime is required',
        'reason is required',
    ]
    errors = validate_time_block_data(
        {'date': '2024-06-20', 'startTime': '10:00', 'endTime': '09:30', 'reason': 'x', 'type': 'lunch'}
    )
    assert errors == [
        'endTime must be after startTime',
        'Invalid type. Must be: break, admin, meeting, or other',
    ]


def test_time_block_recurrence_rules():
    errors = validate_time_block_data(
        {'recurrence': {'type': 'yearly', 'endDate': 'soon', 'daysOfWeek': [1, 9]}},
        is_update=True,
    )
    assert errors == [
        'Invalid recurrence type. Must be: daily, weekly, or custom',
        'Invalid recurrence endDate format. Use YYYY-MM-DD',
        'recurrence.daysOfWeek must contain numbers 0-6 (Sunday-Saturday)',
    ]


def test_password_rules():
    assert validate_password('Secur3pass') == []
    assert validate_password('short') == [
        'Password must be at least 8 characters long',
        'Password must contain at least one uppercase letter',
        'Password must contain at least one number',
    ]
