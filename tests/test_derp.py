import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from meshcontrol.derp import (
    DERPMap,
    DERPRegion,
    get_derp_map,
    load_derp_map_from_path,
    load_derp_map_from_url,
    merge_derp_maps,
)

YAML_MAP = """
regions:
  900:
    regionid: 900
    regioncode: test
    regionname: Test Region
    nodes:
      - name: 900a
        regionid: 900
        hostname: derp.example.com
        stunport: 3478
        stunonly: false
        derpport: 443
"""

JSON_MAP = {
    "Regions": {
        "1": {
            "RegionID": 1,
            "RegionCode": "nyc",
            "RegionName": "New York",
            "Nodes": [
                {"Name": "1a", "RegionID": 1, "HostName": "derp1.example.com", "DERPPort": 443}
            ],
        }
    }
}


@pytest.fixture
def yaml_file(tmp_path):
    path = tmp_path / "derp.yaml"
    path.write_text(YAML_MAP)
    return path


@pytest.fixture
def json_server():
    body = json.dumps(JSON_MAP).encode()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/derp.json"
    server.shutdown()
    server.server_close()


def test_load_from_path(yaml_file):
    derp_map = load_derp_map_from_path(yaml_file)
    assert list(derp_map.regions) == [900]
    region = derp_map.regions[900]
    assert region.region_code == "test"
    assert region.region_name == "Test Region"
    assert region.nodes[0].host_name == "derp.example.com"
    assert region.nodes[0].stun_port == 3478
    assert region.nodes[0].derp_port == 443


def test_load_from_missing_path_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_derp_map_from_path(tmp_path / "missing.yaml")


def test_from_dict_is_case_insensitive():
    derp_map = DERPMap.from_dict(JSON_MAP)
    assert derp_map.regions[1].region_code == "nyc"
    assert derp_map.regions[1].nodes[0].name == "1a"
    assert derp_map.regions[1].nodes[0].host_name == "derp1.example.com"


def test_from_dict_none_is_empty():
    assert DERPMap.from_dict(None).regions == {}


def test_from_dict_rejects_non_mapping():
    with pytest.raises(ValueError):
        DERPMap.from_dict([1, 2])


def test_load_from_url(json_server):
    derp_map = load_derp_map_from_url(json_server, timeout=5)
    assert derp_map.regions[1].region_name == "New York"


def test_merge_empty_list_has_no_regions():
    merged = merge_derp_maps([])
    assert merged.regions == {}
    assert merged.omit_default_regions is False


def test_merge_last_region_wins():
    first = DERPMap(regions={1: DERPRegion(region_id=1, region_code="a"), 2: DERPRegion(region_id=2)})
    second = DERPMap(regions={1: DERPRegion(region_id=1, region_code="b")})
    merged = merge_derp_maps([first, second])
    assert sorted(merged.regions) == [1, 2]
    assert merged.regions[1].region_code == "b"


def test_get_derp_map_combines_path_and_url(yaml_file, json_server):
    derp_map = get_derp_map(paths=[yaml_file], urls=[json_server])
    assert sorted(derp_map.regions) == [1, 900]


def test_get_derp_map_stops_after_first_bad_path(tmp_path, yaml_file):
    derp_map = get_derp_map(paths=[tmp_path / "missing.yaml", yaml_file])
    assert derp_map.regions == {}


def test_get_derp_map_with_no_sources_is_empty():
    assert get_derp_map().regions == {}