"""Tests for the settings store."""

from blesense.database import (
    delete_setting,
    get_all_settings,
    get_db,
    get_setting,
    set_setting,
)


class TestSettings:

    def test_types_are_preserved(self, temp_db):
        set_setting('scan.enabled', True)
        set_setting('scan.port', 5060)
        set_setting('scan.interval', 2.5)
        set_setting('scan.name', 'lab')
        set_setting('scan.profile', {'scan_duration': 10, 'tags': ['a']})

        assert get_setting('scan.enabled') is True
        assert get_setting('scan.port') == 5060
        assert get_setting('scan.interval') == 2.5
        assert get_setting('scan.name') == 'lab'
        assert get_setting('scan.profile') == {'scan_duration': 10, 'tags': ['a']}

    def test_missing_setting_default(self, temp_db):
        assert get_setting('missing') is None
        assert get_setting('missing', 42) == 42

    def test_overwrite(self, temp_db):
        set_setting('theme', 'dark')
        set_setting('theme', 'light')
        assert get_all_settings() == {'theme': 'light'}

    def test_delete(self, temp_db):
        set_setting('theme', 'dark')
        assert delete_setting('theme') is True
        assert delete_setting('theme') is False
        assert get_setting('theme') is None

    def test_failed_transaction_rolls_back(self, temp_db):
        try:
            with get_db() as conn:
                conn.execute(
                    "INSERT INTO settings (key, value, value_type) VALUES ('x', '1', 'int')"
                )
                raise RuntimeError('abort')
        except RuntimeError:
            pass
        assert get_setting('x') is None
