"""Carrier metadata cache backing the Lookup endpoint."""
import threading

import phonenumbers
from phonenumbers import PhoneNumberType, carrier

from mocktwilio.models import CarrierInfo

_LINE_TYPES = {
    PhoneNumberType.MOBILE: "mobile",
    PhoneNumberType.FIXED_LINE: "landline",
    PhoneNumberType.FIXED_LINE_OR_MOBILE: "mobile",
    PhoneNumberType.VOIP: "voip",
    PhoneNumberType.TOLL_FREE: "landline",
}


def derive_carrier_info(number: str) -> CarrierInfo:
    """Build carrier info from the phonenumbers metadata tables."""
    try:
        parsed = phonenumbers.parse(number, None)
    except phonenumbers.NumberParseException:
        return CarrierInfo()

    return CarrierInfo(
        name=carrier.name_for_number(parsed, "en") or None,
        type=_LINE_TYPES.get(phonenumbers.number_type(parsed), "unknown"),
    )


class CarrierInfoCache:
    """Carrier info per number, filled on first lookup.

    Values set explicitly by a test are never replaced by derived ones.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._info: dict[str, CarrierInfo] = {}

    def set(self, number: str, info: CarrierInfo) -> None:
        with self._lock:
            self._info[number] = info

    def get(self, number: str) -> CarrierInfo:
        with self._lock:
            info = self._info.get(number)
            if info is None:
                info = derive_carrier_info(number)
                self._info[number] = info
            return info
