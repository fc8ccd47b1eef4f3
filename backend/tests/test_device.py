from app.core.device import DeviceInfo, parse_device_info


def test_desktop_browser():
    info = parse_device_info(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    assert info.device_type == "desktop"
    assert info.browser == "Chrome 120"
    assert info.os.startswith("Windows")
    assert info.device_name == "Windows Computer"


def test_phone():
    info = parse_device_info(
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
    )
    assert info.device_type == "mobile"
    assert info.os.startswith("iOS 17")
    assert "iPhone" in info.device_name
    assert "Safari" in info.browser


def test_tablet():
    info = parse_device_info(
        "Mozilla/5.0 (iPad; CPU OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
    )
    assert info.device_type == "tablet"


def test_missing_header_yields_nothing():
    assert parse_device_info(None) == DeviceInfo()
    assert parse_device_info("") == DeviceInfo()
