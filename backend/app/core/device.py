"""Device metadata derived from the User-Agent header."""

from dataclasses import dataclass
from typing import Optional

from user_agents import parse

# ua-parser reports unrecognised parts with this family name
_UNKNOWN = "Other"


@dataclass
class DeviceInfo:
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None


def parse_device_info(user_agent: Optional[str]) -> DeviceInfo:
    """
    Parse a User-Agent string into display fields for the session list.

    Examples: ``device_name="Apple iPhone"``, ``device_type="mobile"``,
    ``browser="Chrome 120"``, ``os="Windows 10"``. Missing header -> empty info.
    """
    if not user_agent:
        return DeviceInfo()

    ua = parse(user_agent)

    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    else:
        device_type = "desktop"

    os_family = ua.os.family if ua.os.family and ua.os.family != _UNKNOWN else None
    os_name = None
    if os_family:
        os_name = f"{os_family} {ua.os.version_string}" if ua.os.version_string else os_family

    device_name = None
    if ua.device.brand and ua.device.model:
        device_name = f"{ua.device.brand} {ua.device.model}"
    elif os_family:
        device_name = f"{os_family} {'Computer' if device_type == 'desktop' else device_type}"

    browser = None
    if ua.browser.family and ua.browser.family != _UNKNOWN:
        major = ua.browser.version[0] if ua.browser.version else None
        browser = f"{ua.browser.family} {major}" if major is not None else ua.browser.family

    return DeviceInfo(
        device_name=device_name[:128] if device_name else None,
        device_type=device_type,
        browser=browser[:64] if browser else None,
        os=os_name[:64] if os_name else None,
    )
