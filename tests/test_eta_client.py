import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from eta2weather.core.cancel import CancelToken
from eta2weather.core.errors import Cancelled, NetworkError
from eta2weather.domain.models import Mode
from eta2weather.drivers.eta_client import EtaClient


def var_xml(uri: str, str_value: str, text: str, scale: str = "1") -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<eta version="1.0" xmlns="http://www.eta.co.at/rest/v1">\n'
        f'  <value uri="/user/var{uri}" strValue="{str_value}" unit="" decPlaces="0" '
        f'scaleFactor="{scale}" advTextOffset="0">{text}</value>\n'
        "</eta>\n"
    )


MENU = """<?xml version="1.0" encoding="utf-8"?>
<eta version="1.0" xmlns="http://www.eta.co.at/rest/v1">
  <menu>
    <fub uri="/120/10101" name="Heizkreis">
      <object uri="/120/10101/0/0/12240" name="Schieber Position"/>
    </fub>
  </menu>
</eta>
"""


def make_client(handler) -> EtaClient:
    return EtaClient("192.168.8.100:8080", chunk_delay=0, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_controller_tree():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, text=MENU)

    client = make_client(handler)
    tree = await client.fetch_controller_tree()
    await client.aclose()

    assert seen == ["http://192.168.8.100:8080/user/menu"]
    assert tree[0].children[0].uri == "/120/10101/0/0/12240"


@pytest.mark.asyncio
async def test_non_2xx_is_network_error():
    client = make_client(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(NetworkError):
        await client.fetch_controller_tree()
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = make_client(handler)
    with pytest.raises(NetworkError):
        await client.fetch_variable("/1/2")
    await client.aclose()


@pytest.mark.asyncio
async def test_leaf_batch_omits_failed_paths():
    paths = [f"/120/10101/0/0/{n}" for n in range(12000, 12007)]
    bad = paths[3]

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/user/var")
        if path == bad:
            return httpx.Response(502)
        return httpx.Response(200, text=var_xml(path, "5", "50", scale="10"))

    client = make_client(handler)
    result = await client.fetch_leaf_variables(paths, chunk_size=3, concurrency=1)
    await client.aclose()

    assert set(result) == set(paths) - {bad}
    assert result[paths[0]].scaled_value == 5.0


@pytest.mark.asyncio
async def test_leaf_batch_stops_on_cancelled_token():
    token = CancelToken()
    token.cancel()
    client = make_client(lambda request: httpx.Response(200, text=var_xml("/1", "1", "1")))
    with pytest.raises(Cancelled):
        await client.fetch_leaf_variables(["/1", "/2"], token=token)
    await client.aclose()


@pytest.mark.asyncio
async def test_new_request_supersedes_stale_one_for_same_path():
    calls = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            await asyncio.sleep(5)
        return httpx.Response(200, text=var_xml("/1/2", "7", "7"))

    client = make_client(handler)
    stale = asyncio.create_task(client.fetch_variable("/1/2"))
    await asyncio.sleep(0.01)

    fresh = await client.fetch_variable("/1/2")
    assert fresh.raw_value == "7"
    with pytest.raises(Cancelled):
        await stale
    await client.aclose()


@pytest.mark.asyncio
async def test_write_actuator_position_posts_form():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text="<eta><success/></eta>")

    client = make_client(handler)
    await client.write_actuator_position("/120/10101/0/0/12240", 420)
    await client.aclose()

    (req,) = requests
    assert req.method == "POST"
    assert req.url.path == "/user/var/120/10101/0/0/12240"
    assert parse_qs(req.content.decode()) == {"value": ["420"], "begin": ["0"], "end": ["0"]}


@pytest.mark.asyncio
async def test_write_mode_releases_others_then_presses_target():
    writes = []

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        writes.append((request.url.path.removeprefix("/user/var"), form["value"][0]))
        return httpx.Response(200)

    buttons = {Mode.HT: "/b/ht", Mode.KT: "/b/kt", Mode.AA: "/b/aa", Mode.GT: "/b/gt", Mode.DT: "/b/dt"}
    client = make_client(handler)
    await client.write_mode(Mode.KT, buttons)
    await client.aclose()

    assert writes[-1] == ("/b/kt", "1803")
    assert sorted(writes[:-1]) == sorted((p, "1802") for m, p in buttons.items() if m != Mode.KT)


@pytest.mark.asyncio
async def test_set_host_changes_base_url():
    seen = []

    def handler(request):
        seen.append(request.url.host)
        return httpx.Response(200, text=MENU)

    client = make_client(handler)
    client.set_host("http://10.0.0.5:8080/")
    await client.fetch_controller_tree()
    await client.aclose()
    assert seen == ["10.0.0.5"]
