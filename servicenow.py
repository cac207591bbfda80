import logging

import requests

logger = logging.getLogger(__name__)

DEFAULT_ELDERLY_TABLE = 'x_1855398_elderl_0_elderly_data'
DEFAULT_CHECKIN_TABLE = 'x_1855398_elderl_0_elderly_check_in_log'


class RecordStoreError(Exception):
    """Raised when the ServiceNow instance cannot be read from or written to."""


class ServiceNowGateway:
    """Thin client for the ServiceNow Table API holding elderly profiles and check-in logs."""

    def __init__(self, instance, username, password, elderly_table=DEFAULT_ELDERLY_TABLE,
                 checkin_table=DEFAULT_CHECKIN_TABLE, timeout=8, session=None):
        if not instance:
            raise ValueError("A ServiceNow instance URL is required")
        self.instance = instance.rstrip('/')
        self.elderly_table = elderly_table
        self.checkin_table = checkin_table
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (username, password)
        self.session.headers.update({'Accept': 'application/json'})

    def _table_url(self, table, sys_id=None):
        url = f"{self.instance}/api/now/table/{table}"
        return f"{url}/{sys_id}" if sys_id else url

    def _request(self, method, url, **kwargs):
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else 'unknown'
            raise RecordStoreError(f"{method} {url} failed with status {status}") from e
        except requests.exceptions.RequestException as e:
            raise RecordStoreError(f"{method} {url} failed: {e}") from e
        except ValueError as e:
            raise RecordStoreError(f"{method} {url} returned a non-JSON body") from e
        if not isinstance(payload, dict) or 'result' not in payload:
            raise RecordStoreError(f"{method} {url} returned no 'result' field")
        return payload['result']

    def get_table(self, table, query=''):
        params = {}
        if query:
            params['sysparm_query'] = query
        return self._request('GET', self._table_url(table), params=params)

    # --- elderly profiles ---
    def list_persons(self):
        return self.get_table(self.elderly_table)

    def get_elderly_by_sys_id(self, sys_id):
        try:
            return self._request('GET', self._table_url(self.elderly_table, sys_id))
        except RecordStoreError as e:
            if isinstance(e.__cause__, requests.exceptions.HTTPError) and e.__cause__.response is not None \
                    and e.__cause__.response.status_code == 404:
                logger.info("Elderly record %s not found in ServiceNow", sys_id)
                return None
            raise

    def create_elderly(self, record):
        return self._request('POST', self._table_url(self.elderly_table), json=record)

    # --- check-in log ---
    def list_log_entries(self, query='ORDERBYDESCsys_created_on'):
        return self.get_table(self.checkin_table, query=query)

    def list_todays_log_entries(self, civil_date):
        day = civil_date.isoformat()
        query = (
            f"sys_created_onON{day}@javascript:gs.dateGenerate('{day}','start')"
            f"@javascript:gs.dateGenerate('{day}','end')^ORDERBYDESCsys_created_on"
        )
        return self.list_log_entries(query=query)

    def append_log_entry(self, entry):
        return self._request('POST', self._table_url(self.checkin_table), json=entry)
