import itertools

import pytest

from nfclock.crypto import KeyType
from nfclock.desfire import (
    CHANGE_KEY_FROZEN, CHANGE_KEY_WITH_TARGETED_KEY, KeySettings,
)


def test_every_settings_combination_round_trips():
    for flags, access, count, key_type in itertools.product(
            itertools.product([False, True], repeat=4), range(16), range(16), KeyType):
        settings = KeySettings(*flags, change_key_access=access,
                               key_count=count, key_type=key_type)
        assert KeySettings.decode(settings.encode()) == settings


def test_factory_default_bytes():
    settings = KeySettings.decode(bytes([0x0F, 0x81]))
    assert settings.allow_change_master_key
    assert settings.configuration_changeable
    assert settings.change_key_access == 0
    assert settings.key_count == 1
    assert settings.key_type is KeyType.AES


def test_encode_layout():
    settings = KeySettings(True, False, True, False,
                           change_key_access=CHANGE_KEY_WITH_TARGETED_KEY,
                           key_count=5, key_type=KeyType.TDES)
    assert settings.encode() == bytes([0xE5, 0x45])


def test_decode_rejects_unknown_key_type():
    with pytest.raises(ValueError):
        KeySettings.decode(bytes([0x0F, 0x21]))


def test_decode_rejects_short_input():
    with pytest.raises(ValueError):
        KeySettings.decode(b"\x0f")


@pytest.mark.parametrize("kwargs", [{"change_key_access": 16}, {"key_count": -1}])
def test_out_of_range_fields(kwargs):
    with pytest.raises(ValueError):
        KeySettings(**kwargs)


def test_to_dict_describes_change_key_access():
    frozen = KeySettings(change_key_access=CHANGE_KEY_FROZEN).to_dict()
    assert frozen["Change Key With"] == "Frozen"
    assert KeySettings(change_key_access=2).to_dict()["Change Key With"] == "Key 2"
