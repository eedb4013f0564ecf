import io
import warnings
from math import pi
import numpy as np
import pytest
import palm_utils as pu


def make_region(cx, cy, size, kp0, kp2, score=0.9):
    kps = np.zeros((pu.NB_KEYPOINTS, 2), dtype=np.float32)
    kps[pu.KP_WRIST] = kp0
    kps[pu.KP_MIDDLE_MCP] = kp2
    return pu.HandRegion(score, np.array([cx, cy, size, size], dtype=np.float32), kps)


# Sigmoid

def test_sigmoid_range():
    p = pu.sigmoid(np.linspace(-10, 10, 101))
    assert p.dtype == np.float32
    assert np.all(p > 0) and np.all(p < 1)

def test_sigmoid_zero():
    assert pu.sigmoid(0.0) == pytest.approx(0.5)

def test_sigmoid_large_negative_logit_does_not_overflow():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        p = pu.sigmoid(np.array([-1000.0, 1000.0]))
    assert p[0] == pytest.approx(0.0)
    assert p[1] == pytest.approx(1.0)

def test_sigmoid_saturated_logits_stay_inside_open_interval():
    p = pu.sigmoid(np.array([-1000.0, -200.0, 17.0, 40.0, 1000.0]))
    assert p.dtype == np.float32
    assert np.all(p > 0) and np.all(p < 1)
    assert p[-1] == pu.SIGMOID_MAX
    assert p[0] == pu.SIGMOID_MIN


# IoU and NMS

def test_iou_symmetric():
    a = [0, 0, 10, 10]
    b = [5, 2, 20, 8]
    assert pu.iou(a, b) == pytest.approx(pu.iou(b, a))

def test_iou_identity():
    assert pu.iou([1, 2, 11, 7], [1, 2, 11, 7]) == 1.0

def test_iou_disjoint_and_touching():
    assert pu.iou([0, 0, 10, 10], [20, 20, 30, 30]) == 0.0
    assert pu.iou([0, 0, 10, 10], [10, 0, 20, 10]) == 0.0

def test_iou_empty_boxes():
    assert pu.iou([0, 0, 0, 0], [0, 0, 0, 0]) == 0.0

def test_center_to_corners():
    assert pu.center_to_corners([5, 10, 4, 6]) == [3, 7, 7, 13]

def test_nms_drops_overlapping_lower_score():
    # IoU = 0.5
    high = make_region(5, 5, 10, (5, 8), (5, 5), score=0.9)
    low = make_region(5, 2.5, 10, (5, 8), (5, 5), score=0.8)
    low.pd_box = np.array([5, 2.5, 10, 5], dtype=np.float32)
    assert pu.iou(pu.center_to_corners(high.pd_box), pu.center_to_corners(low.pd_box)) == pytest.approx(0.5)
    assert pu.non_max_suppression([low, high], 0.3) == [high]

def test_nms_keeps_boxes_under_threshold():
    # IoU = 0.1
    high = make_region(5, 5, 10, (5, 8), (5, 5), score=0.9)
    low = make_region(5, 0.5, 10, (5, 8), (5, 5), score=0.8)
    low.pd_box = np.array([5, 0.5, 10, 1], dtype=np.float32)
    assert pu.iou(pu.center_to_corners(high.pd_box), pu.center_to_corners(low.pd_box)) == pytest.approx(0.1)
    assert pu.non_max_suppression([low, high], 0.3) == [high, low]

def test_nms_empty():
    assert pu.non_max_suppression([], 0.3) == []
    assert pu.nms_indices([], [], 0.3) == []

def test_nms_ties_keep_original_order():
    boxes = [[5, 5, 10, 10], [50, 50, 10, 10], [5, 5, 10, 10]]
    assert pu.nms_indices(boxes, [0.7, 0.7, 0.7], 0.3) == [0, 1]

def test_nms_chain():
    # b overlaps a and c, a and c don't overlap: b is removed by a, c survives
    boxes = [[5, 5, 10, 10], [9, 5, 10, 10], [13, 5, 10, 10]]
    assert pu.nms_indices(boxes, [0.9, 0.8, 0.7], 0.3) == [0, 2]

def test_nms_greedy_invariants():
    rng = np.random.default_rng(1)
    for _ in range(50):
        boxes = np.column_stack([rng.uniform(20, 80, (12, 2)), rng.uniform(5, 40, (12, 2))])
        scores = rng.choice([0.6, 0.7, 0.8, 0.9], 12)
        keep = pu.nms_indices(boxes, scores, 0.3)
        corners = [pu.center_to_corners(b) for b in boxes]
        assert [scores[i] for i in keep] == sorted((scores[i] for i in keep), reverse=True)
        for a in range(len(keep)):
            for b in range(a + 1, len(keep)):
                assert pu.iou(corners[keep[a]], corners[keep[b]]) <= 0.3 + 1e-6
        for i in set(range(12)) - set(keep):
            assert any(scores[k] >= scores[i] and pu.iou(corners[k], corners[i]) > 0.3 - 1e-6 for k in keep)


# Anchors

def test_load_anchors():
    anchors = pu.load_anchors(io.StringIO("0.5,0.5\n\n0.25, 0.75\n"))
    np.testing.assert_allclose(anchors, [[0.5, 0.5], [0.25, 0.75]])
    assert not anchors.flags.writeable

@pytest.mark.parametrize("content", ["0.5\n", "0.1,0.2,0.3\n", "a,b\n", "0.5,0.5\n0.1;0.2\n"])
def test_load_anchors_malformed(content):
    with pytest.raises(pu.ConfigError):
        pu.load_anchors(io.StringIO(content))

def test_load_anchors_missing_file(tmp_path):
    with pytest.raises(pu.ConfigError):
        pu.load_anchors(tmp_path / "missing.csv")

def test_generate_palm_anchors_count():
    assert pu.generate_palm_anchors(192).shape == (2016, 4)
    assert pu.generate_palm_anchors(128).shape == (896, 4)

def test_generate_palm_anchors_first_cell():
    anchors = pu.generate_palm_anchors(192)
    # 2 anchors per cell on the 24x24 feature map
    np.testing.assert_allclose(anchors[0], [0.5/24, 0.5/24, 1, 1])
    np.testing.assert_allclose(anchors[1], anchors[0])
    np.testing.assert_allclose(anchors[2, :2], [1.5/24, 0.5/24])

def test_save_and_load_anchors(tmp_path):
    anchors = pu.generate_palm_anchors(192)
    path = tmp_path / "anchors.csv"
    pu.save_anchors(anchors, path)
    np.testing.assert_allclose(pu.load_anchors(path), anchors[:, :2], atol=1e-6)
    np.testing.assert_allclose(pu.load_anchors(str(path)), anchors[:, :2], atol=1e-6)


# Decoding

def test_decode_no_candidate():
    anchors = np.full((4, 2), 0.5, dtype=np.float32)
    scores = np.array([-3, -1, 0, -10], dtype=np.float32)
    bboxes = np.zeros((4, pu.NB_COORDS), dtype=np.float32)
    assert pu.decode_bboxes(0.5, scores, bboxes, anchors, 192) == []

def test_decode_single_candidate():
    anchors = np.array([[0.5, 0.5]], dtype=np.float32)
    reg = np.zeros((1, pu.NB_COORDS), dtype=np.float32)
    reg[0, :4] = [0, 0, 50, 50]
    kp_offsets = np.arange(2 * pu.NB_KEYPOINTS, dtype=np.float32).reshape(-1, 2)
    reg[0, 4:] = kp_offsets.reshape(-1)
    regions = pu.decode_bboxes(0.5, np.array([10.0]), reg, anchors, 192)
    assert len(regions) == 1
    r = regions[0]
    np.testing.assert_allclose(r.pd_box, [96, 96, 50, 50])
    np.testing.assert_allclose(r.pd_kps, kp_offsets + 96)
    assert r.pd_score == pytest.approx(0.9999546, abs=1e-6)
    assert r.anchor_id == 0

def test_decode_keypoints_relative_to_bare_anchor():
    anchors = np.array([[0.25, 0.5]], dtype=np.float32)
    reg = np.zeros((1, pu.NB_COORDS), dtype=np.float32)
    reg[0, :4] = [5, -3, 40, 30]
    reg[0, 4:6] = [1, 2]
    r = pu.decode_bboxes(0.5, [4.0], reg, anchors, 192)[0]
    np.testing.assert_allclose(r.pd_box, [53, 93, 40, 30])
    np.testing.assert_allclose(r.pd_kps[0], [49, 98])
    np.testing.assert_allclose(r.pd_kps[1], [48, 96])

def test_decode_selects_anchors_above_threshold():
    anchors = np.array([[0.1, 0.1], [0.5, 0.5], [0.9, 0.9]], dtype=np.float32)
    reg = np.zeros((1, 3, pu.NB_COORDS), dtype=np.float32)
    scores = np.array([[[-2.0], [3.0], [1.0]]], dtype=np.float32)
    regions = pu.decode_bboxes(0.5, scores, reg, anchors, 100)
    assert [r.anchor_id for r in regions] == [1, 2]
    np.testing.assert_allclose(regions[1].pd_box[:2], [90, 90])

def test_decode_uses_two_first_anchor_columns():
    anchors = pu.generate_palm_anchors(192)
    scores = np.full(len(anchors), -10.0, dtype=np.float32)
    scores[100] = 5
    reg = np.zeros((len(anchors), pu.NB_COORDS), dtype=np.float32)
    regions = pu.decode_bboxes(0.5, scores, reg, anchors, 192)
    assert len(regions) == 1
    np.testing.assert_allclose(regions[0].pd_box[:2], anchors[100, :2] * 192, rtol=1e-6)

def test_decode_anchor_count_mismatch():
    with pytest.raises(pu.ConfigError):
        pu.decode_bboxes(0.5, np.zeros(3), np.zeros((3, pu.NB_COORDS)), np.zeros((2, 2)), 192)

def test_decode_regressor_shape_mismatch():
    with pytest.raises(pu.InferenceError):
        pu.decode_bboxes(0.5, np.zeros(3), np.zeros((3, 16)), np.zeros((3, 2)), 192)

def test_decode_trace():
    messages = []
    anchors = np.full((2, 2), 0.5, dtype=np.float32)
    pu.decode_bboxes(0.5, np.array([1.0, -1.0]), np.zeros((2, pu.NB_COORDS)), anchors, 192, trace=messages.append)
    assert len(messages) == 2
    assert "1 candidates" in messages[1]


# Geometry

def test_normalize():
    np.testing.assert_allclose(pu.normalize((3, 4)), [0.6, 0.8], rtol=1e-6)

def test_normalize_zero_vector():
    with pytest.raises(pu.DegenerateGeometryError):
        pu.normalize((0, 0))

def test_rot90():
    np.testing.assert_allclose(pu.rot90((1, 0)), [0, -1])
    np.testing.assert_allclose(pu.rot90((0, -1)), [-1, 0])

def test_affine_maps_source_on_target():
    src = np.array([(10, 20), (50, 25), (15, 70)], dtype=np.float32)
    mat = pu.solve_affine(src, pu.TARGET_TRIANGLE)
    np.testing.assert_allclose(pu.transform_points(src, mat), pu.TARGET_TRIANGLE, atol=1e-3)

def test_affine_round_trip():
    src = np.array([(10, 20), (50, 25), (15, 70)], dtype=np.float32)
    mat = pu.solve_affine(src, pu.TARGET_TRIANGLE)
    inv = pu.invert_affine(mat)
    points = np.random.default_rng(0).uniform(-500, 500, (50, 2))
    back = pu.transform_points(pu.transform_points(points, mat), inv)
    np.testing.assert_allclose(back, points, atol=1e-3)

def test_affine_collinear_points():
    with pytest.raises(pu.DegenerateGeometryError):
        pu.solve_affine([(0, 0), (10, 10), (20, 20)], pu.TARGET_TRIANGLE)

def test_invert_singular_affine():
    with pytest.raises(pu.DegenerateGeometryError):
        pu.invert_affine(np.array([[1, 2, 0], [2, 4, 0]], dtype=np.float64))

def test_get_triangle():
    tri = pu.get_triangle((100, 100), (100, 50), 10)
    np.testing.assert_allclose(tri, [(100, 50), (100, 40), (90, 50)])


# Region estimation

def test_estimate_region_upright_hand():
    region = make_region(96, 96, 40, kp0=(96, 116), kp2=(96, 96))
    pu.estimate_region(region)
    np.testing.assert_allclose(region.rect_points_a, [(36, 32), (156, 32), (156, 152), (36, 152)], atol=1e-3)
    assert region.rotation == pytest.approx(0, abs=1e-6)
    box = pu.region_to_box(region, 192, 192, 192)
    assert box.x == pytest.approx(36, abs=1e-3)
    assert box.y == pytest.approx(32, abs=1e-3)
    assert box.width == pytest.approx(120, abs=1e-3)
    assert box.height == pytest.approx(120, abs=1e-3)
    assert box.confidence == 0.9

def test_estimate_region_custom_canonical_frame():
    region = make_region(96, 96, 40, kp0=(96, 116), kp2=(96, 96))
    triangle = pu.TARGET_TRIANGLE / 2
    box = pu.TARGET_BOX / 2
    pu.estimate_region(region, target_triangle=triangle, target_box=box)
    np.testing.assert_allclose(region.rect_points_a[0], (36, 32), atol=1e-3)
    np.testing.assert_allclose(region.rect_points_a[2], (156, 152), atol=1e-3)

def test_estimate_region_rotated_hand():
    # Hand pointing to the right
    region = make_region(96, 96, 20, kp0=(86, 96), kp2=(96, 96))
    pu.estimate_region(region)
    assert region.rotation == pytest.approx(pi / 2, abs=1e-5)
    np.testing.assert_allclose(region.rect_points_a, [(128, 66), (128, 126), (68, 126), (68, 66)], atol=1e-3)
    box = pu.region_to_box(region, 192, 192, 192)
    assert (box.x, box.y, box.width, box.height) == pytest.approx((68, 66, 60, 60), abs=1e-3)
    np.testing.assert_allclose(box.points, region.rect_points_a, atol=1e-3)

def test_estimate_region_same_keypoints():
    region = make_region(96, 96, 20, kp0=(90, 90), kp2=(90, 90))
    with pytest.raises(pu.DegenerateGeometryError):
        pu.estimate_region(region)

def test_estimate_region_empty_box():
    region = make_region(96, 96, 0, kp0=(96, 106), kp2=(96, 96))
    with pytest.raises(pu.DegenerateGeometryError):
        pu.estimate_region(region)

def test_region_to_box_scales_to_source_image():
    region = make_region(96, 96, 20, kp0=(96, 106), kp2=(96, 96))
    pu.estimate_region(region)
    box = pu.region_to_box(region, 4000, 2000, 192)
    scale = 4000 / 192
    x0, y0 = region.rect_points_a[0]
    x2, y2 = region.rect_points_a[2]
    assert box.x == pytest.approx(x0 * scale, abs=0.05)
    # 1000 pixels of padding above the image
    assert box.y == pytest.approx(y0 * scale - 1000, abs=0.05)
    assert box.width == pytest.approx((x2 - x0) * scale, abs=0.05)
    assert box.height == pytest.approx((y2 - y0) * scale, abs=0.05)
    assert (box.x, box.y, box.width, box.height) == pytest.approx((1375, 333.33, 1250, 1250), abs=0.05)
    assert 0 <= box.x and box.x + box.width <= 4000
    assert 0 <= box.y and box.y + box.height <= 2000

def test_region_to_box_clipped_to_image():
    region = make_region(96, 96, 40, kp0=(96, 116), kp2=(96, 96))
    pu.estimate_region(region)
    box = pu.region_to_box(region, 4000, 2000, 192)
    assert box.y == 0
    assert 0 <= box.x and box.x + box.width <= 4000
    assert box.y + box.height <= 2000
    # The quadrilateral is not clipped
    assert region.rect_points[:, 1].min() < 0

def test_region_to_box_outside_image():
    region = make_region(96, 96, 20, kp0=(96, 106), kp2=(96, 96))
    region.rect_points_a = np.array([(-50, -50), (-10, -50), (-10, -10), (-50, -10)], dtype=np.float64)
    region.rotation = 0.0
    assert pu.region_to_box(region, 192, 192, 192) is None

def test_region_to_box_keypoints():
    region = make_region(96, 96, 20, kp0=(96, 106), kp2=(96, 96))
    pu.estimate_region(region)
    box = pu.region_to_box(region, 384, 192, 192)
    # scale 2, 96 pixels of padding above the image
    np.testing.assert_allclose(box.keypoints[pu.KP_WRIST], (192, 116))
    np.testing.assert_allclose(box.keypoints[pu.KP_MIDDLE_MCP], (192, 96))


# Masking / drawing

def test_mask_outside_boxes():
    img = np.full((10, 10, 3), 255, dtype=np.uint8)
    masked = pu.mask_outside_boxes(img, [pu.BoundingBox(2, 3, 4, 5, 0.9)])
    assert np.all(masked[3:8, 2:6] == 255)
    masked[3:8, 2:6] = 0
    assert not masked.any()
    assert np.all(img == 255)

def test_mask_without_box():
    img = np.full((10, 10, 3), 255, dtype=np.uint8)
    assert not pu.mask_outside_boxes(img, []).any()

def test_draw_boxes_returns_copy():
    img = np.zeros((50, 50, 3), dtype=np.uint8)
    drawn = pu.draw_boxes(img, [pu.BoundingBox(10, 10, 20, 20, 0.9)], thickness=1)
    assert not img.any()
    assert tuple(drawn[10, 15]) == (0, 255, 0)
