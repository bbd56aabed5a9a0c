#!/usr/bin/env python3
"""
OSM Railway Extraction and Segmentation Script v1.0

This script extracts railway track from OpenStreetMap PBF files and splits it
into a topological network: every way is cut at the nodes it shares with
other ways (or with itself), so each resulting segment runs between line
terminals and junctions.

Supports node usage counting, connectivity-preserving segmentation, haversine
or ellipsoidal segment lengths, tag frequency exploration, parallel processing
and multiple output formats.

Usage:
    python osm_railway_extractor.py segment <input.osm.pbf> [--config CONFIG_FILE] [options]
    python osm_railway_extractor.py explore-tags <input.osm.pbf> [--min-count N]

Example:
    python osm_railway_extractor.py segment us-northeast-latest.osm.pbf --config config.yaml

Requirements:
    pip install osmium pyproj numpy pyyaml pandas fastparquet geojson
"""

import argparse
import json
import gzip
import os
import sys
import math
import time
import hashlib
from pathlib import Path
from collections import Counter, defaultdict
from dataclasses import dataclass, asdict, field
from typing import List, Dict, Tuple, Optional, Any, Set, Iterable
import logging
import concurrent.futures
import multiprocessing
import numpy as np
import yaml

# Check for required libraries and provide installation instructions
try:
    import osmium
except ImportError:
    print("Error: osmium library not found.")
    print("Install with: pip install osmium")
    sys.exit(1)

try:
    from pyproj import Geod
except ImportError:
    print("Error: pyproj library not found.")
    print("Install with: pip install pyproj")
    sys.exit(1)

try:
    import pandas as pd
except ImportError:
    print("Error: pandas library not found.")
    print("Install with: pip install pandas")
    sys.exit(1)

try:
    import fastparquet  # noqa: F401
except ImportError:
    print("Error: fastparquet library not found.")
    print("Install with: pip install fastparquet")
    sys.exit(1)

try:
    import geojson
except ImportError:
    print("Error: geojson library not found.")
    print("Install with: pip install geojson")
    sys.exit(1)


# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

SOFTWARE_VERSION = "1.0"

# Mean Earth radius (IUGG), used by the spherical haversine model
EARTH_RADIUS_KM = 6371.0088

DISTANCE_METHODS = ("haversine", "geodesic")
SUPPORTED_OUTPUT_FORMATS = ("json", "csv", "parquet", "geojson")
TAG_ELEMENTS = ("ways", "nodes")
PROCESSING_STEPS = ("extraction", "segmentation")


@dataclass
class Config:
    """Configuration class for railway extraction parameters."""
    # Processing parameters
    railway_types: List[str] = field(default_factory=lambda: ["rail"])
    parallel_workers: int = 8
    parallel_threshold: int = 500
    distance_calculation_method: str = "haversine"
    strict_node_lookup: bool = False
    max_railways: Optional[int] = None
    restrict_nodes_to_railways: bool = True

    # Tag exploration parameters
    tag_min_count: int = 100
    tag_elements: str = "ways"

    # Output parameters
    output_formats: List[str] = field(default_factory=lambda: ["json", "csv"])
    compression: bool = False
    output_directory: str = "./output"
    generate_manifest: bool = False

    # Caching parameters
    enable_parameter_based_caching: bool = True
    cache_directory: str = "./intermediate"
    reuse_extraction: bool = True

    def __post_init__(self):
        if self.railway_types is None:
            self.railway_types = ["rail"]
        if self.output_formats is None:
            self.output_formats = ["json", "csv"]
        if self.distance_calculation_method not in DISTANCE_METHODS:
            raise ValueError(f"Unknown distance calculation method: {self.distance_calculation_method!r} "
                             f"(expected one of {', '.join(DISTANCE_METHODS)})")
        unknown_formats = [fmt for fmt in self.output_formats if fmt not in SUPPORTED_OUTPUT_FORMATS]
        if unknown_formats:
            raise ValueError(f"Unknown output format(s): {', '.join(unknown_formats)}")
        if self.tag_elements not in TAG_ELEMENTS:
            raise ValueError(f"Unknown tag elements: {self.tag_elements!r} (expected ways or nodes)")

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'Config':
        """Load configuration from YAML file."""
        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        config_dict = {}

        # Map YAML sections to Config attributes
        # A section with every child commented out loads as None
        processing = data.get('processing') or {}
        if processing:
            config_dict.update({
                'railway_types': processing.get('railway_types', ['rail']),
                'parallel_workers': processing.get('parallel_workers', 8),
                'parallel_threshold': processing.get('parallel_threshold', 500),
                'distance_calculation_method': processing.get('distance_calculation_method', 'haversine'),
                'strict_node_lookup': processing.get('strict_node_lookup', False),
                'max_railways': processing.get('max_railways'),
                'restrict_nodes_to_railways': processing.get('restrict_nodes_to_railways', True),
            })

        tags = data.get('tags') or {}
        if tags:
            config_dict.update({
                'tag_min_count': tags.get('min_count', 100),
                'tag_elements': tags.get('elements', 'ways'),
            })

        output = data.get('output') or {}
        if output:
            config_dict.update({
                'output_formats': output.get('formats', ['json', 'csv']),
                'compression': output.get('compression', False),
                'output_directory': output.get('output_directory', './output'),
                'generate_manifest': output.get('generate_manifest', False),
            })

        caching = data.get('caching') or {}
        if caching:
            config_dict.update({
                'enable_parameter_based_caching': caching.get('enable_parameter_based_caching', True),
                'cache_directory': caching.get('cache_directory', './intermediate'),
                'reuse_extraction': caching.get('reuse_extraction', True),
            })

        return cls(**config_dict)

    def get_parameter_hash(self) -> str:
        """Generate a hash of configuration parameters for caching."""
        config_str = json.dumps(asdict(self), sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    def get_step_parameter_hash(self, step_name: str) -> str:
        """Generate a hash of the parameters relevant to a specific processing step."""
        extraction_params = {
            'railway_types': sorted(self.railway_types),
            'restrict_nodes_to_railways': self.restrict_nodes_to_railways,
        }
        if step_name == "extraction":
            # Only parameters that change what is read from the PBF
            step_params = extraction_params
        elif step_name == "segmentation":
            # Extraction inputs plus everything that changes the segment records
            step_params = dict(extraction_params,
                               max_railways=self.max_railways,
                               distance_calculation_method=self.distance_calculation_method,
                               strict_node_lookup=self.strict_node_lookup)
        else:
            raise ValueError(f"Unknown processing step: {step_name!r}")

        config_str = json.dumps(step_params, sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]


class MissingNodeError(KeyError):
    """Raised in strict mode when a segment references a node without coordinates."""

    def __init__(self, node_id: int):
        super().__init__(node_id)
        self.node_id = node_id

    def __str__(self):
        return f"Node {self.node_id} has no coordinates in the node store"


@dataclass(frozen=True)
class OsmNode:
    """A point from the OSM extract. The node id is its key in the node store."""
    lat: float
    lon: float
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class OsmRailway:
    """A railway way as read from OSM, before any splitting."""
    way_id: int
    name: str
    node_ids: List[int]
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_osm_tags(cls, way_id: int, node_ids: List[int], tags: Dict[str, str]) -> 'OsmRailway':
        """Build a railway, naming it after its id when there is no name tag."""
        return cls(
            way_id=way_id,
            name=tags.get('name', str(way_id)),
            node_ids=list(node_ids),
            tags=dict(tags),
        )

    def to_railway_segments(self, junctions: Set[int]) -> List['RailwaySegment']:
        """Split this railway at the given junction node ids."""
        return split_railway(self, junctions)


@dataclass
class RailwaySegment:
    """A piece of a railway between terminals and/or junctions."""
    way_id: int
    name: str
    node_ids: List[int]

    @property
    def num_nodes(self) -> int:
        """Number of node references, shared boundary nodes included."""
        return len(self.node_ids)


# ---------------------------------------------------------------------------
# Junction classification
# ---------------------------------------------------------------------------

def _count_node_usage_chunk(railway_chunk):
    """Count node usage for a chunk of railways (worker function)"""
    node_use_count = Counter()
    for railway in railway_chunk:
        # Repeats inside one way count once per occurrence
        node_use_count.update(railway.node_ids)
    return node_use_count


def count_node_usage(railways: Iterable[OsmRailway]) -> Counter:
    """Count how many times each node id is referenced across all railways."""
    return _count_node_usage_chunk(railways)


def merge_node_counts(partial_counts: Iterable[Counter]) -> Counter:
    """Merge partial node usage counts produced by independent workers."""
    node_use_count = Counter()
    for count_dict in partial_counts:
        node_use_count.update(count_dict)
    return node_use_count


def find_junctions(node_counts: Dict[int, int]) -> Set[int]:
    """Node ids used more than once are junctions, including loop closures."""
    return {node_id for node_id, count in node_counts.items() if count > 1}


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------

def split_railway(railway: OsmRailway, junctions: Set[int]) -> List[RailwaySegment]:
    """Split a railway after every junction node except its first node.

    Each segment after the first starts with the last node of the previous
    one, so adjacent segments share the junction they were cut at and every
    segment can be measured on its own.
    """
    node_ids = railway.node_ids
    if len(node_ids) < 2:
        return [RailwaySegment(way_id=railway.way_id, name=railway.name, node_ids=list(node_ids))]

    raw_runs = []
    current_run = []
    for index, node_id in enumerate(node_ids):
        current_run.append(node_id)
        # Splitting on the first node would leave a useless single-node segment
        if index != 0 and node_id in junctions:
            raw_runs.append(current_run)
            current_run = []
    if current_run:
        raw_runs.append(current_run)

    segments = []
    for run_index, run in enumerate(raw_runs):
        if run_index == 0:
            segment_nodes = list(run)
        else:
            segment_nodes = [raw_runs[run_index - 1][-1]] + run
        segments.append(RailwaySegment(way_id=railway.way_id, name=railway.name, node_ids=segment_nodes))

    return segments


def _split_railway_chunk(args):
    """Split a chunk of railways at junctions (worker function)"""
    railway_chunk, junctions = args
    segments = []
    for railway in railway_chunk:
        segments.extend(split_railway(railway, junctions))
    return segments


def segment_railways(railways: List[OsmRailway], junctions: Optional[Set[int]] = None) -> List[RailwaySegment]:
    """Split every railway at the junctions of the whole collection."""
    if junctions is None:
        junctions = find_junctions(count_node_usage(railways))

    segments = []
    for railway in railways:
        segments.extend(split_railway(railway, junctions))
    return segments


# ---------------------------------------------------------------------------
# Distance calculation
# ---------------------------------------------------------------------------

def haversine_km(coord1: Tuple[float, float], coord2: Tuple[float, float]) -> float:
    """Great-circle distance in kilometers between two (lat, lon) coordinates."""
    lat1, lon1 = math.radians(coord1[0]), math.radians(coord1[1])
    lat2, lon2 = math.radians(coord2[0]), math.radians(coord2[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2

    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def _haversine_path_km(lats, lons) -> float:
    """Vectorized haversine length of a polyline given as lat/lon arrays."""
    lat_r = np.radians(lats)
    lon_r = np.radians(lons)

    dlat = np.diff(lat_r)
    dlon = np.diff(lon_r)
    a = np.sin(dlat / 2) ** 2 + np.cos(lat_r[:-1]) * np.cos(lat_r[1:]) * np.sin(dlon / 2) ** 2

    return float(np.sum(2 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))))


class DistanceCalculator:
    """Measures segment lengths in kilometers from a node store.

    Node ids missing from the store are dropped from the polyline and counted
    in ``not_found_count``. With ``strict`` set they raise ``MissingNodeError``
    instead.
    """

    def __init__(self, method: str = "haversine", strict: bool = False):
        if method not in DISTANCE_METHODS:
            raise ValueError(f"Unknown distance calculation method: {method!r}")
        self.method = method
        self.strict = strict
        self.geod = Geod(ellps='WGS84') if method == "geodesic" else None
        self.found_count = 0
        self.not_found_count = 0

    def resolve(self, node_ids: Iterable[int], nodes: Dict[int, OsmNode]) -> List[Tuple[float, float]]:
        """Look up (lat, lon) for each node id, skipping ids that are not found."""
        coords = []
        for node_id in node_ids:
            node = nodes.get(node_id)
            if node is None:
                self.not_found_count += 1
                if self.strict:
                    raise MissingNodeError(node_id)
                continue
            self.found_count += 1
            coords.append((node.lat, node.lon))
        return coords

    def path_length(self, coords: List[Tuple[float, float]]) -> float:
        """Total length of a (lat, lon) polyline in kilometers."""
        if len(coords) < 2:
            return 0.0

        coords_array = np.asarray(coords, dtype=float)
        lats = coords_array[:, 0]
        lons = coords_array[:, 1]

        if self.method == "geodesic":
            # Geod.inv expects (lon1, lat1, lon2, lat2) and returns (az12, az21, dist) in meters
            distances = self.geod.inv(lons[:-1], lats[:-1], lons[1:], lats[1:])[2]
            return float(np.sum(distances)) / 1000.0

        if len(coords) == 2:
            return haversine_km(coords[0], coords[1])

        return _haversine_path_km(lats, lons)

    def segment_distance(self, node_ids: Iterable[int], nodes: Dict[int, OsmNode]) -> float:
        """Resolve node ids and measure the resulting polyline."""
        return self.path_length(self.resolve(node_ids, nodes))


def calculate_segment_distance(node_ids: Iterable[int], nodes: Dict[int, OsmNode],
                               method: str = "haversine", strict: bool = False) -> float:
    """Length in kilometers of the polyline through the resolvable node ids."""
    return DistanceCalculator(method, strict).segment_distance(node_ids, nodes)


def segment_record(segment: RailwaySegment, distance_km: float) -> Dict[str, Any]:
    """Flatten a segment and its length into an output record."""
    return {
        'id': segment.way_id,
        'name': segment.name,
        'node_ids': list(segment.node_ids),
        'num_nodes': segment.num_nodes,
        'distance_km': distance_km,
    }


def _measure_segment_chunk(args):
    """Measure a chunk of segments (worker function)"""
    segment_chunk, node_subset, method, strict = args

    calculator = DistanceCalculator(method, strict)
    records = [
        segment_record(segment, calculator.segment_distance(segment.node_ids, node_subset))
        for segment in segment_chunk
    ]

    return records, calculator.found_count, calculator.not_found_count


# ---------------------------------------------------------------------------
# Tag aggregation
# ---------------------------------------------------------------------------

def get_used_tags(elements: Iterable[Any], min_count: Optional[int] = None) -> Dict[str, Dict[str, int]]:
    """Return {key: {value: count}} over the tags of the given elements.

    When ``min_count`` is given the table is pruned with ``filter_tag_counts``
    after all counts are final.
    """
    used_tags = defaultdict(Counter)
    for element in elements:
        for key, value in element.tags.items():
            used_tags[key][value] += 1

    counts = {key: dict(values) for key, values in used_tags.items()}
    if min_count is not None:
        counts = filter_tag_counts(counts, min_count)
    return counts


def merge_tag_counts(first: Dict[str, Dict[str, int]],
                     second: Dict[str, Dict[str, int]]) -> Dict[str, Dict[str, int]]:
    """Add two key -> value -> count tables without modifying either."""
    merged = {key: dict(values) for key, values in first.items()}
    for key, values in second.items():
        existing_vals = merged.setdefault(key, {})
        for value, count in values.items():
            existing_vals[value] = existing_vals.get(value, 0) + count
    return merged


def filter_tag_counts(used_tags: Dict[str, Dict[str, int]], min_count: int) -> Dict[str, Dict[str, int]]:
    """Keep values seen at least ``min_count`` times, dropping keys left empty."""
    filtered = {}
    for key, value_counts in used_tags.items():
        kept = {value: count for value, count in value_counts.items() if count >= min_count}
        if kept:
            filtered[key] = kept
    return filtered


def _count_tags_chunk(element_chunk):
    """Count tag usage for a chunk of tagged elements (worker function)"""
    return get_used_tags(element_chunk)


# ---------------------------------------------------------------------------
# OSM ingestion
# ---------------------------------------------------------------------------

class RailwayHandler(osmium.SimpleHandler):
    """OSM handler to extract railway ways based on configuration."""

    def __init__(self, config: Config):
        osmium.SimpleHandler.__init__(self)
        self.config = config
        self.railways = []
        self.railway_type_counts = Counter()  # Track what railway types we see
        self.matching_railways = 0

    def way(self, w):
        """Extract ways whose railway tag matches the configured types."""
        tags = {tag.k: tag.v for tag in w.tags}

        if 'railway' in tags:
            self.railway_type_counts[tags['railway']] += 1

        if tags.get('railway') in self.config.railway_types:
            self.matching_railways += 1
            # The way object is only valid inside this callback, so copy the refs out
            node_ids = [node.ref for node in w.nodes]
            if len(node_ids) < 2:
                logger.debug(f"Way {w.id} has {len(node_ids)} node(s); kept as a degenerate railway")
            self.railways.append(OsmRailway.from_osm_tags(w.id, node_ids, tags))


class NodeHandler(osmium.SimpleHandler):
    """OSM handler collecting node locations, optionally limited to wanted ids."""

    def __init__(self, wanted: Optional[Set[int]] = None):
        osmium.SimpleHandler.__init__(self)
        self.wanted = wanted
        self.nodes = {}
        self.invalid_locations = 0

    def node(self, n):
        if self.wanted is not None and n.id not in self.wanted:
            return
        if not n.location.valid():
            self.invalid_locations += 1
            logger.debug(f"Skipping node {n.id}: invalid location")
            return
        self.nodes[n.id] = OsmNode(
            lat=n.location.lat,
            lon=n.location.lon,
            tags={tag.k: tag.v for tag in n.tags},
        )


def collect_all_railways(pbf_file: str, config: Config) -> List[OsmRailway]:
    """Read an OSM file and parse out all of the railways."""
    logger.info(f"Extracting railways from: {pbf_file}")

    handler = RailwayHandler(config)
    try:
        handler.apply_file(pbf_file)
    except Exception as e:
        logger.error(f"Failed to read railways from {pbf_file}: {e}")
        raise

    logger.info(f"Number of railways {len(handler.railways)}")

    if handler.railway_type_counts:
        logger.info("Railway types found in file:")
        for railway_type, count in handler.railway_type_counts.most_common():
            logger.info(f"  {railway_type}: {count}")
    else:
        logger.warning("No railway tags found in the file at all")

    return handler.railways


def collect_nodes(pbf_file: str, wanted: Optional[Set[int]] = None) -> Dict[int, OsmNode]:
    """Read an OSM file and map node ids to their coordinates and tags."""
    logger.info(f"Collecting node locations from: {pbf_file}")

    handler = NodeHandler(wanted)
    try:
        handler.apply_file(pbf_file)
    except Exception as e:
        logger.error(f"Failed to read nodes from {pbf_file}: {e}")
        raise

    logger.info(f"Number of nodes {len(handler.nodes)}")
    if handler.invalid_locations:
        logger.warning(f"Skipped {handler.invalid_locations} nodes with invalid locations")

    return handler.nodes


def _railways_to_json(railways: List[OsmRailway]) -> List[Dict]:
    return [asdict(railway) for railway in railways]


def _railways_from_json(data: List[Dict]) -> List[OsmRailway]:
    return [OsmRailway(**item) for item in data]


def _nodes_to_json(nodes: Dict[int, OsmNode]) -> Dict[str, List]:
    # JSON object keys must be strings
    return {str(node_id): [node.lat, node.lon, node.tags] for node_id, node in nodes.items()}


def _nodes_from_json(data: Dict[str, List]) -> Dict[int, OsmNode]:
    return {int(node_id): OsmNode(lat=lat, lon=lon, tags=tags) for node_id, (lat, lon, tags) in data.items()}


def extract_railway_data(pbf_file: str, config: Config,
                         cache_file: Optional[str] = None) -> Tuple[List[OsmRailway], Dict[int, OsmNode]]:
    """Extract railways and their node store from a PBF file with optional caching."""
    if cache_file and os.path.exists(cache_file) and config.reuse_extraction:
        logger.info(f"Loading railway data from cache: {cache_file}")
        with gzip.open(cache_file, 'rt', encoding='utf-8') as f:
            cached = json.load(f)
        return _railways_from_json(cached['railways']), _nodes_from_json(cached['nodes'])

    railways = collect_all_railways(pbf_file, config)

    wanted = None
    if config.restrict_nodes_to_railways:
        wanted = {node_id for railway in railways for node_id in railway.node_ids}
    nodes = collect_nodes(pbf_file, wanted)

    if cache_file:
        logger.info(f"Saving railway data to cache: {cache_file}")
        os.makedirs(os.path.dirname(cache_file), exist_ok=True)
        with gzip.open(cache_file, 'wt', encoding='utf-8') as f:
            json.dump({'railways': _railways_to_json(railways), 'nodes': _nodes_to_json(nodes)}, f)

    return railways, nodes


def get_cache_filename(input_file: str, config: Config) -> str:
    """Generate cache filename based on input file and extraction parameters."""
    base_name = Path(input_file).stem
    extraction_param_hash = config.get_step_parameter_hash("extraction")
    cache_dir = Path(config.cache_directory) / "extraction" / extraction_param_hash
    cache_dir.mkdir(parents=True, exist_ok=True)
    return str(cache_dir / f"{base_name}.railways.json.gz")


# ---------------------------------------------------------------------------
# Network building
# ---------------------------------------------------------------------------

class RailwayNetworkBuilder:
    """Turns railways and a node store into measured railway segments."""

    def __init__(self, config: Config):
        self.config = config
        self.distance_calc = DistanceCalculator(config.distance_calculation_method,
                                                config.strict_node_lookup)
        self.qa_metrics = {}

    def build_network(self, railways: List[OsmRailway],
                      nodes: Dict[int, OsmNode]) -> Tuple[List[Dict], Dict]:
        """Segment the railways and measure every segment."""
        if self.config.max_railways is not None:
            railways = railways[:self.config.max_railways]

        # Found/not-found counts describe a single run
        self.distance_calc = DistanceCalculator(self.config.distance_calculation_method,
                                                self.config.strict_node_lookup)
        self.qa_metrics = {}

        logger.info(f"Building railway network from {len(railways)} railways...")
        start_time = time.time()

        # Step 1: Count node usage and classify junctions
        logger.info("Step 1: Counting node usage and identifying junctions...")
        node_counts = self._count_node_usage(railways)
        junctions = find_junctions(node_counts)
        logger.info(f"Found {len(node_counts)} distinct nodes, {len(junctions)} junctions")

        # Step 2: Split railways at junctions
        logger.info("Step 2: Splitting railways at junctions...")
        segments = self._split_railways(railways, junctions)
        logger.info(f"Split {len(railways)} railways into {len(segments)} segments")

        # Step 3: Measure segments
        logger.info(f"Step 3: Measuring segments ({self.config.distance_calculation_method})...")
        records = self._measure_segments(segments, nodes)

        if self.distance_calc.not_found_count:
            logger.warning(f"{self.distance_calc.not_found_count} node references had no coordinates "
                           f"({self.distance_calc.found_count} resolved); distances skip them")

        # Step 4: Generate QA metrics
        logger.info("Step 4: Generating QA metrics...")
        self._generate_qa_metrics(railways, junctions, nodes, records, time.time() - start_time)

        logger.info(f"Network built: {len(records)} segments in {time.time() - start_time:.2f}s")

        return records, self.qa_metrics

    def aggregate_tags(self, elements: List[Any], min_count: Optional[int] = None) -> Dict[str, Dict[str, int]]:
        """Build a tag frequency table, in parallel for large inputs."""
        if self._use_parallel(len(elements)):
            logger.info(f"Counting tags of {len(elements)} elements using {self.config.parallel_workers} parallel workers")
            used_tags = {}
            for chunk_tags in self._map_chunks(_count_tags_chunk, self._chunk(elements)):
                used_tags = merge_tag_counts(used_tags, chunk_tags)
        else:
            logger.info(f"Counting tags of {len(elements)} elements sequentially")
            used_tags = get_used_tags(elements)

        if min_count is not None:
            used_tags = filter_tag_counts(used_tags, min_count)
        return used_tags

    def _use_parallel(self, item_count: int) -> bool:
        """Parallelize only with several workers and more items than the break-even threshold."""
        return self.config.parallel_workers > 1 and item_count > self.config.parallel_threshold

    def _chunk(self, items: List[Any], chunks_per_worker: int = 1) -> List[List[Any]]:
        chunk_size = max(1, len(items) // (self.config.parallel_workers * chunks_per_worker))
        return [items[i:i + chunk_size] for i in range(0, len(items), chunk_size)]

    def _map_chunks(self, worker, work_items: List[Any]) -> List[Any]:
        """Run a module-level worker over work items, keeping their order."""
        try:
            with multiprocessing.Pool(processes=self.config.parallel_workers) as pool:
                return pool.map(worker, work_items)
        except MissingNodeError:
            raise
        except Exception as e:
            logger.warning(f"Multiprocessing failed ({e}), falling back to threading")

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.parallel_workers) as executor:
            return list(executor.map(worker, work_items))

    def _count_node_usage(self, railways: List[OsmRailway]) -> Counter:
        if self._use_parallel(len(railways)):
            logger.info(f"Counting node usage of {len(railways)} railways using {self.config.parallel_workers} parallel workers")
            return merge_node_counts(self._map_chunks(_count_node_usage_chunk, self._chunk(railways)))

        logger.info(f"Counting node usage of {len(railways)} railways sequentially")
        return count_node_usage(railways)

    def _split_railways(self, railways: List[OsmRailway], junctions: Set[int]) -> List[RailwaySegment]:
        if self._use_parallel(len(railways)):
            logger.info(f"Splitting {len(railways)} railways using {self.config.parallel_workers} parallel workers")
            work_items = []
            for chunk in self._chunk(railways, chunks_per_worker=2):
                # Ship only the junctions this chunk can split on
                chunk_junctions = {node_id for railway in chunk for node_id in railway.node_ids
                                   if node_id in junctions}
                work_items.append((chunk, chunk_junctions))

            segments = []
            for chunk_segments in self._map_chunks(_split_railway_chunk, work_items):
                segments.extend(chunk_segments)
            return segments

        logger.info(f"Splitting {len(railways)} railways sequentially")
        return segment_railways(railways, junctions)

    def _measure_segments(self, segments: List[RailwaySegment], nodes: Dict[int, OsmNode]) -> List[Dict]:
        if self._use_parallel(len(segments)):
            logger.info(f"Measuring {len(segments)} segments using {self.config.parallel_workers} parallel workers")
            work_items = []
            for chunk in self._chunk(segments, chunks_per_worker=2):
                node_subset = {node_id: nodes[node_id] for segment in chunk for node_id in segment.node_ids
                               if node_id in nodes}
                work_items.append((chunk, node_subset, self.config.distance_calculation_method,
                                   self.config.strict_node_lookup))

            records = []
            for chunk_records, found, not_found in self._map_chunks(_measure_segment_chunk, work_items):
                records.extend(chunk_records)
                self.distance_calc.found_count += found
                self.distance_calc.not_found_count += not_found
            return records

        logger.info(f"Measuring {len(segments)} segments sequentially")
        return [
            segment_record(segment, self.distance_calc.segment_distance(segment.node_ids, nodes))
            for segment in segments
        ]

    def _generate_qa_metrics(self, railways: List[OsmRailway], junctions: Set[int],
                             nodes: Dict[int, OsmNode], records: List[Dict], processing_time: float):
        self.qa_metrics = {
            'processing_time_seconds': processing_time,
            'railways': len(railways),
            'segments': len(records),
            'junctions': len(junctions),
            'node_store_size': len(nodes),
            'nodes_found': self.distance_calc.found_count,
            'nodes_not_found': self.distance_calc.not_found_count,
            'distance_calculation_method': self.config.distance_calculation_method,
            'strict_node_lookup': self.config.strict_node_lookup,
        }

        if records:
            distances = sorted(record['distance_km'] for record in records)
            n = len(distances)

            self.qa_metrics.update({
                'total_distance_km': sum(distances),
                'segment_distance_p5_km': distances[int(n * 0.05)],
                'segment_distance_p50_km': distances[int(n * 0.5)],
                'segment_distance_p95_km': distances[int(n * 0.95)],
                'mean_segment_distance_km': sum(distances) / n,
            })


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class OutputManager:
    """Writes segment records and reports in the configured formats."""

    def __init__(self, config: Config):
        self.config = config

    def save_segments(self, records: List[Dict], nodes: Dict[int, OsmNode],
                      base_filename: str) -> Dict[str, int]:
        """Save segments in all configured formats and return file sizes."""
        file_sizes = {}

        if "json" in self.config.output_formats:
            file_sizes.update(self._save_segments_json(records, base_filename))

        if "csv" in self.config.output_formats:
            file_sizes.update(self._save_csv(records, base_filename))

        if "parquet" in self.config.output_formats:
            file_sizes.update(self._save_parquet(records, base_filename))

        if "geojson" in self.config.output_formats:
            file_sizes.update(self._save_geojson(records, nodes, base_filename))

        return file_sizes

    def save_qa_summary(self, qa_metrics: Dict, base_filename: str) -> Dict[str, int]:
        """Write the QA metrics next to the segment outputs."""
        qa_file = f"{base_filename}.qa_summary.json"
        self._save_json(qa_metrics, qa_file)
        return {qa_file: os.path.getsize(qa_file)}

    def save_tag_report(self, used_tags: Dict[str, Dict[str, int]], filename: str) -> Dict[str, int]:
        """Save a tag frequency table as pretty JSON, most common values first."""
        report = {
            key: dict(sorted(values.items(), key=lambda item: (-item[1], item[0])))
            for key, values in sorted(used_tags.items())
        }
        os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
        self._save_json(report, filename)
        logger.info(f"Saved tag report: {filename} ({len(report)} keys)")
        return {filename: os.path.getsize(filename)}

    def _save_segments_json(self, records: List[Dict], base_filename: str) -> Dict[str, int]:
        segments_file = f"{base_filename}.segments.json"
        self._save_json(records, segments_file)
        logger.info(f"Saved segments: {segments_file}")
        return {segments_file: os.path.getsize(segments_file)}

    def _segments_frame(self, records: List[Dict]) -> pd.DataFrame:
        """Tabular view of the segments with node ids flattened to a string."""
        rows = [dict(record, node_ids=" ".join(str(node_id) for node_id in record['node_ids']))
                for record in records]
        return pd.DataFrame(rows, columns=['id', 'name', 'node_ids', 'num_nodes', 'distance_km'])

    def _save_csv(self, records: List[Dict], base_filename: str) -> Dict[str, int]:
        segments_df = self._segments_frame(records)

        if self.config.compression:
            segments_file = f"{base_filename}.segments.csv.gz"
            segments_df.to_csv(segments_file, index=False, compression='gzip')
        else:
            segments_file = f"{base_filename}.segments.csv"
            segments_df.to_csv(segments_file, index=False)

        return {segments_file: os.path.getsize(segments_file)}

    def _save_parquet(self, records: List[Dict], base_filename: str) -> Dict[str, int]:
        segments_file = f"{base_filename}.segments.parquet"

        segments_df = self._segments_frame(records)
        segments_df.to_parquet(segments_file, engine='fastparquet',
                               compression='snappy' if self.config.compression else None)

        return {segments_file: os.path.getsize(segments_file)}

    def _save_geojson(self, records: List[Dict], nodes: Dict[int, OsmNode],
                      base_filename: str) -> Dict[str, int]:
        """Save segments as GeoJSON LineStrings for visualization."""
        geojson_file = f"{base_filename}.segments.geojson"

        features = []
        skipped = 0
        for record in records:
            # GeoJSON wants (lon, lat); unresolved nodes are left out like in the distance
            coords = [(nodes[node_id].lon, nodes[node_id].lat) for node_id in record['node_ids']
                      if node_id in nodes]
            if len(coords) < 2:
                skipped += 1
                continue

            properties = {
                'id': record['id'],
                'name': record['name'],
                'num_nodes': record['num_nodes'],
                'distance_km': record['distance_km'],
            }
            features.append(geojson.Feature(geometry=geojson.LineString(coords), properties=properties))

        if skipped:
            logger.info(f"Left {skipped} segments without two located nodes out of the GeoJSON")

        with open(geojson_file, 'w') as f:
            geojson.dump(geojson.FeatureCollection(features), f)

        return {geojson_file: os.path.getsize(geojson_file)}

    def _save_json(self, data: Any, filename: str):
        """Save data as JSON file."""
        with open(filename, 'w') as f:
            json.dump(data, f, indent=2)


class ManifestGenerator:
    """Generates run manifests for reproducibility."""

    @staticmethod
    def generate_manifest(input_file: str, config: Config, qa_metrics: Dict,
                          file_sizes: Dict[str, int]) -> Dict:
        return {
            'version': SOFTWARE_VERSION,
            'timestamp': time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime()),
            'input': {
                'file_path': input_file,
                'file_size_bytes': os.path.getsize(input_file) if os.path.isfile(input_file) else 0,
                'sha256_hash': ManifestGenerator._calculate_file_hash(input_file),
            },
            'configuration': {
                'parameter_hash': config.get_parameter_hash(),
                'step_hashes': {
                    step: config.get_step_parameter_hash(step) for step in PROCESSING_STEPS
                },
                'parameters': asdict(config),
            },
            'results': {
                'railways': qa_metrics.get('railways', 0),
                'segments': qa_metrics.get('segments', 0),
                'junctions': qa_metrics.get('junctions', 0),
                'total_distance_km': qa_metrics.get('total_distance_km', 0),
                'output_files': file_sizes,
            },
        }

    @staticmethod
    def _calculate_file_hash(file_path: str) -> str:
        """Calculate SHA256 hash of a file."""
        if not os.path.isfile(file_path):
            return ""

        sha256_hash = hashlib.sha256()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(4096), b""):
                sha256_hash.update(chunk)

        return sha256_hash.hexdigest()


def get_output_base_filename(input_file: str, output_directory: str) -> str:
    """Generate base filename for outputs inside a directory named after the input."""
    input_path = Path(input_file)

    if input_path.name.endswith('.osm.pbf'):
        directory_name = input_path.name.replace('.osm.pbf', '')
    else:
        directory_name = input_path.stem

    output_dir = Path(output_directory) / directory_name
    os.makedirs(output_dir, exist_ok=True)

    return str(output_dir / directory_name)


def create_test_railways() -> List[OsmRailway]:
    """Create synthetic test railways for validation."""
    # Main line with a short crossover onto it and a branch joining at node 6
    return [
        OsmRailway.from_osm_tags(1, [1, 2, 3, 6, 8, 9], {'railway': 'rail', 'name': 'Test Main Line', 'gauge': '1435'}),
        OsmRailway.from_osm_tags(2, [2, 3], {'railway': 'rail', 'service': 'crossover', 'gauge': '1435'}),
        OsmRailway.from_osm_tags(3, [4, 5, 6, 7], {'railway': 'rail', 'name': 'Test Branch', 'usage': 'branch'}),
    ]


def create_test_nodes() -> Dict[int, OsmNode]:
    """Create node locations for the synthetic test railways."""
    return {
        1: OsmNode(40.7500, -73.9900),
        2: OsmNode(40.7550, -73.9850, {'railway': 'switch'}),
        3: OsmNode(40.7600, -73.9800, {'railway': 'switch'}),
        4: OsmNode(40.7700, -73.9900),
        5: OsmNode(40.7680, -73.9800),
        6: OsmNode(40.7650, -73.9750, {'railway': 'switch'}),
        7: OsmNode(40.7620, -73.9650),
        8: OsmNode(40.7700, -73.9700),
        9: OsmNode(40.7750, -73.9650, {'railway': 'buffer_stop'}),
    }


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Extract railway track from OSM PBF files and split it into a junction-aware network",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python osm_railway_extractor.py segment us-northeast-latest.osm.pbf
  python osm_railway_extractor.py segment data.osm.pbf --config custom_config.yaml --max-railways 100
  python osm_railway_extractor.py segment data.osm.pbf --distance-method geodesic --strict
  python osm_railway_extractor.py explore-tags data.osm.pbf --min-count 100

Configuration:
  Uses config.yaml by default. Command line options override config file settings.

Attribution:
  © OpenStreetMap contributors. Data licensed under ODbL.
        """
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    segment = subparsers.add_parser('segment', help='Segment railways and write the network')
    explore = subparsers.add_parser('explore-tags', help='Write a tag frequency report')

    for sub in (segment, explore):
        sub.add_argument('input_file', help='Path to input OSM PBF file (use "test" for synthetic test data)')
        sub.add_argument('--config', default='config.yaml',
                         help='Path to YAML configuration file (default: config.yaml)')
        sub.add_argument('--no-cache', action='store_true',
                         help='Disable caching and force re-extraction')
        sub.add_argument('--workers', type=int,
                         help='Number of parallel workers (overrides config)')

    segment.add_argument('--max-railways', type=int,
                         help='Only segment the first N railways (overrides config)')
    segment.add_argument('--distance-method', choices=DISTANCE_METHODS,
                         help='Distance model for segment lengths (overrides config)')
    segment.add_argument('--strict', action='store_true',
                         help='Fail when a segment references a node without coordinates')
    segment.add_argument('--output-dir',
                         help='Directory for output files (overrides config)')
    segment.add_argument('--formats', nargs='+', choices=SUPPORTED_OUTPUT_FORMATS,
                         help='Output formats (overrides config)')

    explore.add_argument('--min-count', type=int,
                         help='Drop tag values seen fewer times than this (overrides config)')
    explore.add_argument('--elements', choices=TAG_ELEMENTS,
                         help='Aggregate tags of railway ways or of their nodes (overrides config)')
    explore.add_argument('--output',
                         help='Report path (default: <output_directory>/railway_tags.json)')

    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Load the YAML configuration and apply command line overrides."""
    if os.path.exists(args.config):
        config = Config.from_yaml(args.config)
        logger.info(f"Loaded configuration from {args.config}")
    else:
        config = Config()
        logger.info(f"Using default configuration ({args.config} not found)")

    if args.no_cache:
        config.enable_parameter_based_caching = False
        config.reuse_extraction = False
    if args.workers is not None:
        config.parallel_workers = args.workers

    if args.command == 'segment':
        if args.max_railways is not None:
            config.max_railways = args.max_railways
        if args.distance_method is not None:
            config.distance_calculation_method = args.distance_method
        if args.strict:
            config.strict_node_lookup = True
        if args.output_dir is not None:
            config.output_directory = args.output_dir
        if args.formats:
            config.output_formats = args.formats
    else:
        if args.min_count is not None:
            config.tag_min_count = args.min_count
        if args.elements is not None:
            config.tag_elements = args.elements

    return config


def load_input(input_file: str, config: Config) -> Tuple[List[OsmRailway], Dict[int, OsmNode]]:
    """Railways and their node store, from synthetic data, the cache or the PBF."""
    if input_file.lower() == "test":
        logger.info("Using synthetic test data")
        return create_test_railways(), create_test_nodes()

    cache_file = get_cache_filename(input_file, config) if config.enable_parameter_based_caching else None
    return extract_railway_data(input_file, config, cache_file)


def load_railways(input_file: str, config: Config) -> List[OsmRailway]:
    """Railways only, without the node pass over the PBF."""
    if input_file.lower() == "test":
        logger.info("Using synthetic test data")
        return create_test_railways()

    return collect_all_railways(input_file, config)


def run_segment(args: argparse.Namespace, config: Config):
    """Segment, measure and write the railway network of the input file."""
    railways, nodes = load_input(args.input_file, config)
    if not railways:
        logger.warning("No railways found in the input file")
        return

    builder = RailwayNetworkBuilder(config)
    records, qa_metrics = builder.build_network(railways, nodes)

    base_filename = get_output_base_filename(args.input_file, config.output_directory)
    output_manager = OutputManager(config)
    file_sizes = output_manager.save_segments(records, nodes, base_filename)
    file_sizes.update(output_manager.save_qa_summary(qa_metrics, base_filename))

    if config.generate_manifest:
        manifest = ManifestGenerator.generate_manifest(args.input_file, config, qa_metrics, file_sizes)
        manifest_file = f"{base_filename}.manifest.json"
        with open(manifest_file, 'w') as f:
            json.dump(manifest, f, indent=2)
        file_sizes[manifest_file] = os.path.getsize(manifest_file)

    print("\n" + "=" * 60)
    print(f"RAILWAY SEGMENTATION SUMMARY v{SOFTWARE_VERSION}")
    print("=" * 60)
    print(f"Input file: {args.input_file}")
    print(f"Railways: {qa_metrics['railways']:,}")
    print(f"Junctions: {qa_metrics['junctions']:,}")
    print(f"Segments: {qa_metrics['segments']:,}")
    print(f"Total length: {qa_metrics.get('total_distance_km', 0):.3f} km")
    print(f"Nodes resolved: {qa_metrics['nodes_found']:,} (missing: {qa_metrics['nodes_not_found']:,})")
    print(f"Processing time: {qa_metrics['processing_time_seconds']:.2f}s")

    print(f"\nOutput files:")
    for filename, size in file_sizes.items():
        print(f"  {filename} ({size:,} bytes)")
    print("=" * 60)
    print("© OpenStreetMap contributors. Data licensed under ODbL.")


def run_explore_tags(args: argparse.Namespace, config: Config):
    if config.tag_elements == "nodes":
        railways, nodes = load_input(args.input_file, config)
        referenced = {node_id for railway in railways for node_id in railway.node_ids}
        elements = [node for node_id, node in nodes.items() if node_id in referenced]
    else:
        elements = load_railways(args.input_file, config)

    builder = RailwayNetworkBuilder(config)
    used_tags = builder.aggregate_tags(elements, config.tag_min_count)

    output_file = args.output or str(Path(config.output_directory) / "railway_tags.json")
    OutputManager(config).save_tag_report(used_tags, output_file)

    print(f"Tag keys with values seen at least {config.tag_min_count} times: {len(used_tags)}")
    print(f"Report written to {output_file}")


def main(argv: Optional[List[str]] = None):
    """Command line entry point. Exits with status 1 on any processing error."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)

        if args.command == 'segment':
            run_segment(args, config)
        else:
            run_explore_tags(args, config)

    except Exception as e:
        logger.error(f"Error processing file: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    # Set multiprocessing start method for better compatibility
    try:
        multiprocessing.set_start_method('spawn', force=True)
    except RuntimeError:
        # Start method already set
        pass

    main()
