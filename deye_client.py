"""
Deye Cloud Client

Reads the latest telemetry of one power station from the Deye developer API
and hands it to signal fusion.
"""
import hashlib
import logging
from typing import Any, Dict, Optional

import requests

import config
from station import SignalFusion, StationSnapshot

logger = logging.getLogger(__name__)


class DeyeError(Exception):
    """Raised when the station cloud is unconfigured or a request fails"""


class DeyeClient:
    """Token login plus ``/station/latest`` for a single station"""

    def __init__(self, base_url: str = None, app_id: str = None, app_secret: str = None,
                 station_id: str = None, access_token: str = None, email: str = None,
                 username: str = None, mobile: str = None, password: str = None,
                 password_sha256: str = None, timeout: int = config.DEYE_API_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or config.DEYE_BASE_URL).rstrip('/')
        self.app_id = (app_id or config.DEYE_APP_ID).strip()
        self.app_secret = (app_secret or config.DEYE_APP_SECRET).strip()
        self.station_id = str(station_id or config.DEYE_STATION_ID).strip()
        self.access_token = (access_token or config.DEYE_ACCESS_TOKEN).strip()
        self.email = (email or config.DEYE_EMAIL).strip()
        self.username = (username or config.DEYE_USERNAME).strip()
        self.mobile = (mobile or config.DEYE_MOBILE).strip()
        self.password = password or config.DEYE_PASSWORD
        self.password_sha256 = (password_sha256 or config.DEYE_PASSWORD_SHA256).strip()
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.app_secret and self.station_id.isdigit())

    def _check_response(self, response: requests.Response, what: str) -> Dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not response.ok or data.get('success') is False:
            code = data.get('code', response.status_code)
            msg = data.get('msg', f"{what} failed")
            raise DeyeError(f"Deye {what} failed ({code}): {msg}")
        return data

    def _login_body(self) -> Dict[str, Any]:
        if not (self.email or self.username or self.mobile):
            raise DeyeError("Deye login is not configured (set DEYE_EMAIL, DEYE_USERNAME or DEYE_MOBILE)")
        if not (self.password_sha256 or self.password):
            raise DeyeError("Deye password is not configured (set DEYE_PASSWORD or DEYE_PASSWORD_SHA256)")

        body = {
            'appSecret': self.app_secret,
            'password': self.password_sha256 or hashlib.sha256(self.password.encode('utf-8')).hexdigest(),
        }
        if self.email:
            body['email'] = self.email
        elif self.username:
            body['username'] = self.username
        else:
            body['mobile'] = self.mobile
            if config.DEYE_COUNTRY_CODE:
                body['countryCode'] = config.DEYE_COUNTRY_CODE
        if config.DEYE_COMPANY_ID:
            body['companyId'] = config.DEYE_COMPANY_ID
        return body

    def get_access_token(self) -> str:
        """Static token from the environment, otherwise an account login"""
        if self.access_token:
            return self.access_token

        try:
            response = self.session.post(
                f"{self.base_url}/account/token",
                params={'appId': self.app_id},
                json=self._login_body(),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Deye token request failed: {e}")
            raise DeyeError(f"Deye token request failed: {e}") from e

        data = self._check_response(response, "token")
        inner = data.get('data') if isinstance(data.get('data'), dict) else {}
        token = (inner.get('token') or inner.get('accessToken')
                 or data.get('token') or data.get('accessToken'))
        if not token:
            raise DeyeError("Deye token response does not contain a token")
        return token

    def fetch_station_payload(self) -> Any:
        """Raw ``station/latest`` data for the configured station"""
        if not self.configured:
            raise DeyeError("Deye is not configured. Set DEYE_APP_ID, DEYE_APP_SECRET and DEYE_STATION_ID")

        token = self.get_access_token()
        try:
            response = self.session.post(
                f"{self.base_url}/station/latest",
                json={'stationId': int(self.station_id)},
                headers={'Authorization': f"bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Deye station/latest request failed: {e}")
            raise DeyeError(f"Deye station/latest request failed: {e}") from e

        data = self._check_response(response, "station/latest")
        return data['data'] if data.get('data') is not None else data

    def fetch_station_snapshot(self, fusion: Optional[SignalFusion] = None) -> StationSnapshot:
        """Latest payload fused into a snapshot (grid cache lives in ``fusion``)"""
        fusion = fusion or SignalFusion()
        return fusion.fuse(self.fetch_station_payload(), self.station_id)
