import pytest
import requests

from kcreport.gateways import postgrest_gateway
from kcreport.gateways.data_gateway import GatewayError, Order, eq, in_, is_not, lt
from kcreport.gateways.postgrest_gateway import PostgrestGateway, encode_query


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ('' if body is None else 'json')
        self.content = self.text.encode('utf-8')

    def json(self):
        if self._body is None:
            raise ValueError('no json')
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(postgrest_gateway.time, 'sleep', lambda s: None)


def _gateway(*responses):
    session = FakeSession(*responses)
    gw = PostgrestGateway(base_url='https://store.example/rest/v1/', api_key='k', verify_ssl=True,
                          timeout=5, session=session)
    return gw, session


def test_encode_query():
    params = encode_query(
        [eq('doctorid', 'doc-1'), eq('active', True), lt('reportdate', '2024-02-01'), in_('id', [1, 'a,b'])],
        order=Order('reportdate', descending=True), limit=1, columns='id,reportdate',
    )
    assert params == [
        ('select', 'id,reportdate'),
        ('doctorid', 'eq.doc-1'),
        ('active', 'eq.true'),
        ('reportdate', 'lt.2024-02-01'),
        ('id', 'in.(1,"a,b")'),
        ('order', 'reportdate.desc.nullslast'),
        ('limit', '1'),
    ]


def test_null_filters():
    assert encode_query([eq('situationid', None)]) == [('situationid', 'is.null')]


def test_is_not_filter():
    assert encode_query([is_not('isoutdated', True)]) == [('isoutdated', 'not.is.true')]
    assert encode_query([is_not('outdatedat', None)]) == [('outdatedat', 'not.is.null')]


def test_close_releases_session():
    gw, session = _gateway()
    gw.close()
    assert session.closed


def test_fetch_many_sends_auth_headers():
    gw, session = _gateway(FakeResponse(200, [{'id': 1}]))
    assert gw.fetch_many('Patient', [eq('id', 1)]) == [{'id': 1}]
    method, url, kwargs = session.calls[0]
    assert method == 'GET'
    assert url == 'https://store.example/rest/v1/Patient'
    assert kwargs['headers']['apikey'] == 'k'
    assert kwargs['headers']['Authorization'] == 'Bearer k'
    assert ('id', 'eq.1') in kwargs['params']


def test_retries_on_5xx():
    gw, session = _gateway(FakeResponse(503, text='busy'), FakeResponse(200, [{'id': 2}]))
    assert gw.fetch_many('Patient') == [{'id': 2}]
    assert len(session.calls) == 2


def test_gives_up_after_three_attempts():
    gw, session = _gateway(*(FakeResponse(502, {'message': 'bad gateway'}) for _ in range(3)))
    with pytest.raises(GatewayError) as exc:
        gw.fetch_many('Patient')
    assert 'bad gateway' in exc.value.message
    assert exc.value.table == 'Patient'
    assert len(session.calls) == 3


def test_transport_errors_are_retried_then_raised():
    gw, session = _gateway(*(requests.ConnectionError('refused') for _ in range(3)))
    with pytest.raises(GatewayError):
        gw.fetch_many('Patient')
    assert len(session.calls) == 3


def test_client_errors_are_not_retried():
    gw, session = _gateway(FakeResponse(400, {'message': 'column "x" does not exist'}))
    with pytest.raises(GatewayError) as exc:
        gw.fetch_many('Patient', [eq('x', 1)])
    assert 'does not exist' in exc.value.message
    assert len(session.calls) == 1


def test_insert_is_single_attempt():
    gw, session = _gateway(FakeResponse(503, text='busy'))
    with pytest.raises(GatewayError):
        gw.insert('MedicationPrescription', [{'reportid': 1}])
    assert len(session.calls) == 1
    assert session.calls[0][2]['headers']['Prefer'] == 'return=representation'


def test_upsert_uses_conflict_columns():
    gw, session = _gateway(FakeResponse(201, [{'id': 1}]))
    gw.upsert('AssignedRecommendation', [{'labreportid': 1, 'questionid': 2}], on_conflict=('labreportid', 'questionid'))
    method, _url, kwargs = session.calls[0]
    assert method == 'POST'
    assert kwargs['params'] == [('on_conflict', 'labreportid,questionid')]
    assert kwargs['headers']['Prefer'] == 'resolution=merge-duplicates,return=representation'


def test_delete_counts_removed_rows():
    gw, session = _gateway(FakeResponse(200, [{'id': 1}, {'id': 2}]))
    assert gw.delete('MedicationPrescription', [eq('reportid', 1), eq('isoutdated', False)]) == 2
    assert session.calls[0][2]['params'] == [('reportid', 'eq.1'), ('isoutdated', 'eq.false')]


def test_unfiltered_delete_is_refused():
    gw, session = _gateway()
    with pytest.raises(GatewayError):
        gw.delete('MedicationPrescription', [])
    assert session.calls == []


def test_missing_configuration(monkeypatch):
    monkeypatch.delenv('KC_STORE_URL', raising=False)
    monkeypatch.delenv('KC_STORE_KEY', raising=False)
    gw = PostgrestGateway(session=FakeSession())
    with pytest.raises(GatewayError):
        gw.fetch_many('Patient')
