import json

import pytest

import osm_railway_extractor
from osm_railway_extractor import (
    Config,
    collect_all_railways,
    collect_nodes,
    extract_railway_data,
    main,
)

OSM_XML = """<?xml version='1.0' encoding='UTF-8'?>
<osm version="0.6" generator="tests">
  <node id="1" version="1" lat="40.0" lon="-75.0"/>
  <node id="2" version="1" lat="40.01" lon="-75.0">
    <tag k="railway" v="switch"/>
  </node>
  <node id="3" version="1" lat="40.02" lon="-75.0"/>
  <node id="4" version="1" lat="40.01" lon="-74.99"/>
  <node id="5" version="1" lat="41.0" lon="-76.0"/>
  <way id="10" version="1">
    <nd ref="1"/>
    <nd ref="2"/>
    <nd ref="3"/>
    <tag k="railway" v="rail"/>
    <tag k="name" v="Main Line"/>
  </way>
  <way id="11" version="1">
    <nd ref="2"/>
    <nd ref="4"/>
    <tag k="railway" v="rail"/>
    <tag k="service" v="siding"/>
  </way>
  <way id="12" version="1">
    <nd ref="3"/>
    <nd ref="5"/>
    <tag k="railway" v="abandoned"/>
  </way>
  <way id="13" version="1">
    <nd ref="4"/>
    <nd ref="5"/>
    <tag k="highway" v="residential"/>
  </way>
</osm>
"""


@pytest.fixture
def osm_file(tmp_path):
    path = tmp_path / "sample.osm"
    path.write_text(OSM_XML)
    return str(path)


def test_collects_only_configured_railway_types(osm_file):
    railways = collect_all_railways(osm_file, Config())

    assert [railway.way_id for railway in railways] == [10, 11]
    main_line, siding = railways
    assert main_line.name == "Main Line"
    assert main_line.node_ids == [1, 2, 3]
    assert siding.name == "11"
    assert siding.tags == {'railway': 'rail', 'service': 'siding'}


def test_railway_types_are_configurable(osm_file):
    railways = collect_all_railways(osm_file, Config(railway_types=["rail", "abandoned"]))
    assert [railway.way_id for railway in railways] == [10, 11, 12]


def test_collect_nodes_reads_locations_and_tags(osm_file):
    nodes = collect_nodes(osm_file, wanted={1, 2, 3, 4})

    assert sorted(nodes) == [1, 2, 3, 4]
    assert nodes[2].lat == pytest.approx(40.01)
    assert nodes[2].lon == pytest.approx(-75.0)
    assert nodes[2].tags == {'railway': 'switch'}
    assert nodes[1].tags == {}

    assert sorted(collect_nodes(osm_file)) == [1, 2, 3, 4, 5]


def test_extraction_cache_round_trip(osm_file, tmp_path):
    config = Config()
    cache_file = str(tmp_path / "cache" / "sample.railways.json.gz")

    railways, nodes = extract_railway_data(osm_file, config, cache_file)
    cached_railways, cached_nodes = extract_railway_data(str(tmp_path / "gone.osm"), config, cache_file)

    assert sorted(nodes) == [1, 2, 3, 4]
    assert cached_railways == railways
    assert cached_nodes == nodes


def test_unreadable_input_raises(tmp_path):
    with pytest.raises(Exception):
        collect_all_railways(str(tmp_path / "missing.osm.pbf"), Config())


def _no_node_pass(*args, **kwargs):
    raise AssertionError("node locations are not needed for way tags")


def test_explore_way_tags_reads_only_ways(osm_file, tmp_path, monkeypatch):
    monkeypatch.setattr(osm_railway_extractor, "collect_nodes", _no_node_pass)
    report = tmp_path / "tags.json"

    main(['explore-tags', osm_file, '--config', str(tmp_path / "missing.yaml"),
          '--min-count', '1', '--output', str(report)])

    with open(report) as f:
        assert json.load(f) == {'railway': {'rail': 2}, 'name': {'Main Line': 1}, 'service': {'siding': 1}}
