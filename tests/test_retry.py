"""
HOMESERVER Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import pytest

from svcmigrate.utils.retry import RetryPolicy

from conftest import SleepRecorder


def test_succeeds_on_third_attempt_after_two_sleeps():
    sleep = SleepRecorder()
    policy = RetryPolicy(max_attempts=5, interval=10, sleep=sleep)
    answers = iter([False, False, True])
    assert policy.run(lambda: next(answers), label="thing") == (True, 3)
    assert sleep.delays == [10, 10]


def test_exhaustion_reports_max_attempts_without_trailing_sleep():
    sleep = SleepRecorder()
    policy = RetryPolicy(max_attempts=4, interval=1, sleep=sleep)
    assert policy.run(lambda: False) == (False, 4)
    assert len(sleep.delays) == 3


def test_exceptions_count_as_failed_attempts():
    calls = []

    def attempt():
        calls.append(1)
        if len(calls) < 2:
            raise ConnectionError("refused")
        return True

    policy = RetryPolicy(max_attempts=3, interval=0, sleep=SleepRecorder())
    assert policy.run(attempt) == (True, 2)


def test_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, interval=10, backoff=2.0, max_interval=30)
    assert list(policy.delays()) == [10, 20, 30, 30]


def test_should_stop_ends_the_run_early():
    policy = RetryPolicy(max_attempts=10, interval=1, sleep=SleepRecorder())
    assert policy.run(lambda: False, should_stop=lambda: True) == (False, 1)


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"timeout": 0}, {"backoff": 0.5}])
def test_invalid_policies_are_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_from_dict_overrides_only_given_keys():
    default = RetryPolicy(max_attempts=30, interval=10, timeout=5)
    policy = RetryPolicy.from_dict({"max_attempts": 3}, default)
    assert (policy.max_attempts, policy.interval, policy.timeout) == (3, 10, 5)
    assert RetryPolicy.from_dict(None, default) is default
    assert "sleep" not in policy.to_dict()
