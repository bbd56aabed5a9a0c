import json

import pandas as pd

from osm_railway_extractor import (
    Config,
    ManifestGenerator,
    OutputManager,
    RailwayNetworkBuilder,
    create_test_nodes,
    create_test_railways,
    get_output_base_filename,
)


def _records():
    nodes = create_test_nodes()
    records, qa_metrics = RailwayNetworkBuilder(Config(parallel_workers=1)).build_network(create_test_railways(), nodes)
    return records, qa_metrics, nodes


def test_output_base_filename_strips_pbf_suffix(tmp_path):
    base = get_output_base_filename("/data/us-northeast-latest.osm.pbf", str(tmp_path))

    assert base == str(tmp_path / "us-northeast-latest" / "us-northeast-latest")
    assert (tmp_path / "us-northeast-latest").is_dir()


def test_save_segments_in_all_formats(tmp_path):
    records, _, nodes = _records()
    manager = OutputManager(Config(output_formats=["json", "csv", "parquet", "geojson"]))
    base = str(tmp_path / "net")

    file_sizes = manager.save_segments(records, nodes, base)

    assert set(file_sizes) == {
        f"{base}.segments.json",
        f"{base}.segments.csv",
        f"{base}.segments.parquet",
        f"{base}.segments.geojson",
    }
    assert all(size > 0 for size in file_sizes.values())

    with open(f"{base}.segments.json") as f:
        saved = json.load(f)
    assert saved == records

    frame = pd.read_csv(f"{base}.segments.csv")
    assert list(frame.columns) == ['id', 'name', 'node_ids', 'num_nodes', 'distance_km']
    assert frame.loc[3, 'node_ids'] == "6 8 9"
    assert len(frame) == 7


def test_compressed_csv(tmp_path):
    records, _, nodes = _records()
    manager = OutputManager(Config(output_formats=["csv"], compression=True))

    file_sizes = manager.save_segments(records, nodes, str(tmp_path / "net"))

    assert list(file_sizes) == [str(tmp_path / "net.segments.csv.gz")]
    assert len(pd.read_csv(tmp_path / "net.segments.csv.gz", compression='gzip')) == 7


def test_geojson_skips_segments_without_two_located_nodes(tmp_path):
    records, _, nodes = _records()
    del nodes[1]
    manager = OutputManager(Config(output_formats=["geojson"]))

    manager.save_segments(records, nodes, str(tmp_path / "net"))

    with open(tmp_path / "net.segments.geojson") as f:
        collection = json.load(f)
    assert collection['type'] == 'FeatureCollection'
    # segment [1, 2] is left with a single located node
    assert len(collection['features']) == 6
    first = collection['features'][0]
    assert first['geometry']['type'] == 'LineString'
    assert first['geometry']['coordinates'][0] == [nodes[2].lon, nodes[2].lat]
    assert first['properties']['id'] == 1


def test_tag_report_and_qa_summary(tmp_path):
    _, qa_metrics, _ = _records()
    manager = OutputManager(Config())
    report = tmp_path / "reports" / "railway_tags.json"

    manager.save_tag_report({'railway': {'tram': 1, 'rail': 3}}, str(report))
    manager.save_qa_summary(qa_metrics, str(tmp_path / "net"))

    with open(report) as f:
        assert list(json.load(f)['railway']) == ['rail', 'tram']
    with open(tmp_path / "net.qa_summary.json") as f:
        assert json.load(f)['segments'] == 7


def test_manifest_describes_the_run(tmp_path):
    source = tmp_path / "input.osm.pbf"
    source.write_bytes(b"not really a pbf")
    _, qa_metrics, _ = _records()

    manifest = ManifestGenerator.generate_manifest(str(source), Config(), qa_metrics, {"a.json": 10})

    assert manifest['input']['file_size_bytes'] == len(b"not really a pbf")
    assert len(manifest['input']['sha256_hash']) == 64
    assert manifest['results']['segments'] == 7
    assert manifest['results']['output_files'] == {"a.json": 10}
    assert manifest['configuration']['step_hashes'] == {
        'extraction': Config().get_step_parameter_hash("extraction"),
        'segmentation': Config().get_step_parameter_hash("segmentation"),
    }
