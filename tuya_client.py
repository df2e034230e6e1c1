"""
Tuya Cloud Client

Lists the smart outlets (automats) linked to a Tuya user and switches them.
Every request is signed with HMAC-SHA256 as the Tuya OpenAPI requires.
"""
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

import config
from models import SwitchDevice

logger = logging.getLogger(__name__)

# Status codes that carry the relay state, most specific first
SWITCH_CODES = ["switch_1", "switch", "switch_2", "switch_3", "switch_4", "switch_led"]
POWER_CODES = ["cur_power", "curPower", "power", "add_ele", "total_power"]
ON_WORDS = {"true", "on", "opened", "open"}
OFF_WORDS = {"false", "off", "closed", "close"}


class TuyaError(Exception):
    """Raised when the outlet cloud is unconfigured or a request fails"""


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def sign_request(access_id: str, access_secret: str, method: str, path: str, body_text: str,
                 t: str, nonce: str, access_token: str = '') -> str:
    """Uppercase hex HMAC-SHA256 over client id, token, time, nonce and the request"""
    string_to_sign = "\n".join([method.upper(), sha256_hex(body_text), "", path])
    payload = f"{access_id}{access_token}{t}{nonce}{string_to_sign}"
    return hmac.new(
        access_secret.encode('utf-8'), payload.encode('utf-8'), hashlib.sha256
    ).hexdigest().upper()


def extract_on(status: List[Dict]) -> Optional[bool]:
    by_code = {s.get('code'): s.get('value') for s in status}
    for code in SWITCH_CODES:
        if code not in by_code:
            continue
        value = by_code[code]
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            word = value.strip().lower()
            if word in ON_WORDS:
                return True
            if word in OFF_WORDS:
                return False
    return None


def extract_switch_code(status: List[Dict]) -> Optional[str]:
    codes = [s.get('code') for s in status if isinstance(s.get('code'), str)]
    for code in SWITCH_CODES:
        if code in codes:
            return code
    for code in codes:
        if code.startswith('switch'):
            return code
    return None


def extract_power_w(status: List[Dict]) -> Optional[float]:
    """Outlet draw in W; some firmwares report tenths of a watt"""
    by_code = {s.get('code'): s.get('value') for s in status}
    for code in POWER_CODES:
        value = by_code.get(code)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value / 10 if value > 10000 else value
    return None


class TuyaClient:
    """Signed OpenAPI calls for one Tuya cloud project"""

    def __init__(self, access_id: str = None, access_secret: str = None, user_id: str = None,
                 base_url: str = None, timeout: int = config.TUYA_API_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.access_id = (access_id or config.TUYA_ACCESS_ID).strip()
        self.access_secret = (access_secret or config.TUYA_ACCESS_SECRET).strip()
        self.user_id = (user_id or config.TUYA_USER_ID).strip()
        self.base_url = (base_url or config.tuya_base_url()).rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, access_token: str = '', body: Any = None) -> Dict:
        if not self.access_id or not self.access_secret:
            raise TuyaError("Tuya is not configured. Set TUYA_ACCESS_ID and TUYA_ACCESS_SECRET")

        body_text = json.dumps(body) if body is not None else ''
        t = str(int(time.time() * 1000))
        nonce = str(uuid.uuid4())
        headers = {
            'client_id': self.access_id,
            'sign_method': 'HMAC-SHA256',
            't': t,
            'nonce': nonce,
            'sign': sign_request(self.access_id, self.access_secret, method, path,
                                 body_text, t, nonce, access_token),
        }
        if access_token:
            headers['access_token'] = access_token
        if method == 'POST':
            headers['Content-Type'] = 'application/json'

        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", headers=headers,
                data=body_text if method == 'POST' else None, timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Tuya request {method} {path} failed: {e}")
            raise TuyaError(f"Tuya request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not response.ok or data.get('success') is False:
            code = data.get('code', response.status_code)
            msg = data.get('msg', 'Tuya request failed')
            raise TuyaError(f"Tuya API failed ({code}): {msg}")
        return data

    def get_token(self) -> str:
        data = self._request('GET', '/v1.0/token?grant_type=1')
        token = (data.get('result') or {}).get('access_token')
        if not token:
            raise TuyaError("Tuya token response has no access_token")
        return token

    def _device_status(self, device_id: str, token: str) -> List[Dict]:
        data = self._request('GET', f"/v1.0/devices/{quote(device_id, safe='')}/status", token)
        result = data.get('result')
        return result if isinstance(result, list) else []

    def fetch_switchable_devices(self) -> List[SwitchDevice]:
        """
        All of the user's devices that expose a switch code.

        A device whose status cannot be read is listed without a switch code
        and therefore filtered out.
        """
        if not self.user_id:
            raise TuyaError("Tuya is not configured. Set TUYA_USER_ID")

        token = self.get_token()
        data = self._request('GET', f"/v1.0/users/{quote(self.user_id, safe='')}/devices", token)
        items = data.get('result') if isinstance(data.get('result'), list) else []

        devices = []
        for item in items:
            device_id = item.get('id')
            if not device_id:
                continue
            try:
                status = self._device_status(device_id, token)
            except TuyaError as e:
                logger.warning(f"Could not read status for outlet {device_id}: {e}")
                status = []

            switch_code = extract_switch_code(status)
            if switch_code is None:
                continue
            devices.append(SwitchDevice(
                id=device_id,
                name=item.get('name') or device_id,
                online=bool(item.get('online')),
                on=extract_on(status),
                switch_code=switch_code,
                power_w=extract_power_w(status),
                category=item.get('category'),
                product_name=item.get('product_name'),
            ))

        logger.debug(f"Tuya reports {len(devices)} switchable devices")
        return devices

    def set_switch(self, device_id: str, on: bool, code: Optional[str] = None):
        """Send one switch command; the default code is ``switch_1``"""
        token = self.get_token()
        command_code = (code or 'switch_1').strip()
        self._request(
            'POST', f"/v1.0/iot-03/devices/{quote(device_id, safe='')}/commands", token,
            body={'commands': [{'code': command_code, 'value': bool(on)}]},
        )
        logger.info(f"Outlet {device_id} switched {'ON' if on else 'OFF'} ({command_code})")
