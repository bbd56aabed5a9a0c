from collections import Counter

from osm_railway_extractor import (
    OsmRailway,
    RailwaySegment,
    count_node_usage,
    create_test_railways,
    find_junctions,
    merge_node_counts,
    segment_railways,
    split_railway,
)


def _railway(way_id, node_ids, name=None):
    tags = {'railway': 'rail'}
    if name is not None:
        tags['name'] = name
    return OsmRailway.from_osm_tags(way_id, node_ids, tags)


def _reconstruct(segments):
    nodes = list(segments[0].node_ids)
    for segment in segments[1:]:
        nodes.extend(segment.node_ids[1:])
    return nodes


# ---- junction classification ----
def test_usage_counts_and_junctions_for_reference_network():
    railways = create_test_railways()
    counts = count_node_usage(railways)

    assert counts[2] == 2
    assert counts[3] == 2
    assert counts[6] == 2
    assert all(counts[n] == 1 for n in (1, 4, 5, 7, 8, 9))
    assert find_junctions(counts) == {2, 3, 6}


def test_node_repeated_inside_one_way_is_a_junction():
    counts = count_node_usage([_railway(1, [10, 11, 12, 11, 13])])
    assert counts[11] == 2
    assert find_junctions(counts) == {11}


def test_merged_partial_counts_match_single_pass():
    railways = create_test_railways() + [_railway(4, [9, 20, 21])]
    partial = [count_node_usage(railways[:2]), count_node_usage(railways[2:])]

    assert merge_node_counts(partial) == count_node_usage(railways)
    assert merge_node_counts([]) == Counter()


# ---- segmentation ----
def test_reference_network_splits_into_seven_segments():
    segments = segment_railways(create_test_railways())

    assert len(segments) == 7
    by_way = {}
    for segment in segments:
        by_way.setdefault(segment.way_id, []).append(segment.node_ids)
    assert by_way[1] == [[1, 2], [2, 3], [3, 6], [6, 8, 9]]
    assert by_way[2] == [[2, 3]]
    assert by_way[3] == [[4, 5, 6], [6, 7]]


def test_segments_inherit_id_and_name():
    segments = split_railway(_railway(42, [1, 2, 3], name="Harbour Line"), {2})
    assert [(s.way_id, s.name) for s in segments] == [(42, "Harbour Line"), (42, "Harbour Line")]

    unnamed = split_railway(_railway(43, [1, 2]), set())
    assert unnamed[0].name == "43"


def test_adjacent_segments_share_the_junction():
    segments = split_railway(_railway(1, [1, 2, 3, 4, 5, 6]), {3, 5})

    assert [s.node_ids for s in segments] == [[1, 2, 3], [3, 4, 5], [5, 6]]
    for left, right in zip(segments, segments[1:]):
        assert left.node_ids[-1] == right.node_ids[0]


def test_reconstruction_restores_original_way():
    railways = create_test_railways() + [_railway(4, [30, 31, 32, 31, 33, 30])]
    junctions = find_junctions(count_node_usage(railways))

    for railway in railways:
        assert _reconstruct(split_railway(railway, junctions)) == railway.node_ids


def test_split_count_follows_interior_junction_positions():
    node_ids = [1, 2, 3, 4, 5, 6, 7]
    junctions = {1, 3, 4, 7}
    segments = split_railway(_railway(1, node_ids), junctions)

    interior = sum(1 for i in range(1, len(node_ids) - 1) if node_ids[i] in junctions)
    assert len(segments) == 1 + interior
    assert [s.node_ids for s in segments] == [[1, 2, 3], [3, 4], [4, 5, 6, 7]]


def test_way_without_shared_nodes_passes_through():
    railways = create_test_railways() + [_railway(9, [100, 101, 102, 103])]
    segments = [s for s in segment_railways(railways) if s.way_id == 9]

    assert segments == [RailwaySegment(way_id=9, name="9", node_ids=[100, 101, 102, 103])]


def test_first_node_never_splits():
    railways = [_railway(1, [5, 6, 7]), _railway(2, [5, 8])]
    segments = segment_railways(railways)

    assert [s.node_ids for s in segments] == [[5, 6, 7], [5, 8]]


def test_loop_forces_split_at_repeated_node():
    segments = split_railway(_railway(1, [1, 2, 3, 2, 4]), find_junctions(count_node_usage([_railway(1, [1, 2, 3, 2, 4])])))
    assert [s.node_ids for s in segments] == [[1, 2], [2, 3, 2], [2, 4]]

    closed = _railway(2, [1, 2, 3, 1])
    assert [s.node_ids for s in segment_railways([closed])] == [[1, 2, 3, 1]]


def test_degenerate_ways_pass_through():
    assert [s.node_ids for s in split_railway(_railway(1, []), {1})] == [[]]
    assert [s.node_ids for s in split_railway(_railway(2, [7]), {7})] == [[7]]


def test_segments_do_not_alias_parent_nodes():
    railway = _railway(1, [1, 2, 3])
    segment = split_railway(railway, set())[0]
    segment.node_ids.append(99)

    assert railway.node_ids == [1, 2, 3]


def test_to_railway_segments_matches_split_railway():
    railway = _railway(1, [1, 2, 3, 6, 8, 9])
    assert railway.to_railway_segments({2, 3, 6}) == split_railway(railway, {2, 3, 6})
