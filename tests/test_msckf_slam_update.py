import numpy as np
import pytest

from msckf_slam.config import MsckfSlamConfig
from msckf_slam.math_utils import quat_to_rot
from msckf_slam.msckf_slam_update import MSCKF_SLAM_STAT_KEYS, MsckfSlamUpdate
from msckf_slam.triangulation import GaussNewtonTriangulator, Triangulation
from msckf_slam.types import InverseDepthFeature, PreconditionError, Track
from msckf_slam.update import MeasurementUpdate

SIGMA = 1.5e-3


class _FixedTriangulator:
    """Returns the same answer for every track."""

    def __init__(self, result):
        self.result = result
        self.calls = 0

    def triangulate(self, track, poses, covariance=None):
        self.calls += 1
        return self.result


def _make_update(scene, tracks, cov=None, attitudes=None, positions=None,
                 triangulator=None, **kwargs):
    return MsckfSlamUpdate(
        tracks,
        scene.attitudes if attitudes is None else attitudes,
        scene.positions if positions is None else positions,
        GaussNewtonTriangulator() if triangulator is None else triangulator,
        scene.cov if cov is None else cov,
        n_poses_max=scene.n_poses_max,
        sigma_img=SIGMA,
        **kwargs,
    )


def _inconsistent_track():
    uv = [[0.4, 0.3], [-0.4, -0.3], [0.4, -0.3], [-0.4, 0.3]]
    return Track.from_points(uv, feature_id=99)


def test_empty_track_list(scene):
    upd = _make_update(scene, [])
    assert upd.row_count == 0
    assert upd.jacobian.shape == (0, scene.layout.min_dim)
    assert upd.residual.shape == (0,)
    assert upd.noise.shape == (0, 0)
    assert upd.init_mats.n_features == 0
    assert upd.inliers.shape == (0, 3)
    assert upd.outliers.shape == (0, 3)


def test_is_a_measurement_update(scene):
    assert isinstance(_make_update(scene, [scene.track(0)]), MeasurementUpdate)


def test_exact_track_is_inlier_with_2n_rows(scene):
    upd = _make_update(scene, [scene.track(0)])

    n = scene.n_poses
    assert upd.inliers.shape == (1, 3)
    assert upd.outliers.shape == (0, 3)
    np.testing.assert_allclose(upd.inliers[0], scene.points[0], atol=1e-8)

    assert upd.jacobian.shape == (2 * n - 3, scene.layout.min_dim)
    assert upd.init_mats.H1.shape == (3, scene.layout.min_dim)
    assert upd.init_mats.H2.shape == (3, 3)
    assert upd.row_count == 2 * n
    np.testing.assert_allclose(upd.noise, SIGMA**2 * np.eye(2 * n - 3))
    np.testing.assert_allclose(upd.residual, 0.0, atol=1e-9)

    # core state is not observed by this update
    assert np.all(upd.jacobian[:, :scene.layout.core_dim] == 0.0)

    feat = upd.init_mats.feature(0)
    assert feat.anchor_index == n - 1
    R_a = quat_to_rot(scene.attitudes[-1])
    np.testing.assert_allclose(feat.to_world(R_a, scene.positions[-1]), scene.points[0], atol=1e-8)


def test_mixed_tracks_partition_and_row_layout(scene):
    tracks = [
        scene.track(0),
        scene.track(1, n_obs=1),
        scene.track(2, n_obs=3),
        _inconsistent_track(),
        scene.track(3, n_obs=4, explicit=True),
    ]
    upd = _make_update(scene, tracks)

    assert len(upd.inliers) + len(upd.outliers) == len(tracks)
    assert len(upd.inliers) == 3
    assert upd.row_count == 2 * (6 + 3 + 4)

    rows = upd.track_rows
    assert [r.track_index for r in rows] == [0, 2, 4]
    assert [r.feature_id for r in rows] == [0, 2, 3]
    assert rows[0].msckf.start == 0 and rows[0].init.start == 0
    for prev, cur in zip(rows, rows[1:]):
        assert cur.msckf.start == prev.msckf.stop
        assert cur.init.start == prev.init.stop
    assert rows[-1].msckf.stop == upd.jacobian.shape[0]
    assert rows[-1].init.stop == upd.init_mats.H1.shape[0]
    assert [r.n_rows for r in rows] == [12, 6, 8]

    assert upd.init_mats.feature_ids == (0, 2, 3)
    assert upd.init_mats.anchor_indices == (5, 5, 5)

    stats = upd.stats
    assert set(MSCKF_SLAM_STAT_KEYS) <= set(stats)
    assert stats['total_attempt'] == 5
    assert stats['success'] == 3
    assert stats['fail_few_obs'] == 1
    assert sum(v for k, v in stats.items() if k.startswith('fail_')) == 2


def test_few_observation_outlier_is_nan(scene):
    upd = _make_update(scene, [scene.track(0, n_obs=1)])
    assert upd.row_count == 0
    assert upd.outliers.shape == (1, 3)
    assert np.all(np.isnan(upd.outliers[0]))


def test_two_observation_track_gives_one_msckf_row(scene):
    upd = _make_update(scene, [scene.track(0, n_obs=2)])
    assert upd.jacobian.shape[0] == 1
    assert upd.init_mats.r1.shape == (3,)


def test_triangulation_failure_point_is_reported(scene):
    p = np.array([1.0, 2.0, 3.0])
    tri = _FixedTriangulator(Triangulation.failed("fail_parallax", p_w=p))
    upd = _make_update(scene, [scene.track(0), scene.track(1)], triangulator=tri)

    assert tri.calls == 2
    assert upd.row_count == 0
    assert upd.stats['fail_parallax'] == 2
    np.testing.assert_array_equal(upd.outliers, np.vstack([p, p]))


def test_point_behind_anchor_is_rejected(scene):
    behind = scene.positions[-1] - np.array([0.0, 0.0, 5.0])
    tri = _FixedTriangulator(Triangulation(True, behind))
    upd = _make_update(scene, [scene.track(0)], triangulator=tri)
    assert upd.stats['fail_depth_sign'] == 1
    np.testing.assert_allclose(upd.outliers[0], behind)


def test_chi2_gate_rejects_with_tight_threshold(scene):
    tracks = [scene.track(k, noise=1e-3, seed=k) for k in range(4)]
    upd = _make_update(scene, tracks, chi2_threshold_scale=1e-12)
    assert upd.row_count == 0
    assert len(upd.outliers) == 4
    assert upd.stats['fail_chi2'] == 4


def test_noisy_tracks_pass_default_gate(scene):
    tracks = [scene.track(k, noise=SIGMA * 0.5, seed=k) for k in range(len(scene.points))]
    upd = _make_update(scene, tracks)
    assert len(upd.inliers) >= len(tracks) - 1


def test_residual_is_first_order_in_pose_error(scene):
    attitudes, positions, dx = scene.perturbed_poses(1e-5)
    tracks = [scene.track(k, attitudes=attitudes, positions=positions)
              for k in range(len(scene.points))]
    upd = _make_update(scene, tracks)

    assert len(upd.inliers) == len(tracks)
    assert np.max(np.abs(upd.residual)) > 1e-7
    np.testing.assert_allclose(upd.residual, upd.jacobian @ dx, atol=1e-8)


def test_init_matrices_recover_true_feature(scene):
    attitudes, positions, dx = scene.perturbed_poses(1e-5, seed=11)
    tracks = [scene.track(k, attitudes=attitudes, positions=positions)
              for k in range(3)]
    upd = _make_update(scene, tracks)
    mats = upd.init_mats
    assert mats.n_features == 3

    R_a, p_a = quat_to_rot(attitudes[-1]), positions[-1]
    for k in range(3):
        rows = slice(3 * k, 3 * k + 3)
        f_true = InverseDepthFeature.from_world(scene.points[k], R_a, p_a, 5).as_vector()
        H2 = mats.H2[rows, rows]
        corr = np.linalg.solve(H2, mats.r1[rows] - mats.H1[rows] @ dx)
        np.testing.assert_allclose(mats.features[rows] + corr, f_true, atol=1e-7)

    # H2 is block diagonal, upper-triangular per block
    assert np.all(mats.H2[0:3, 3:9] == 0.0)
    assert np.all(np.tril(mats.H2[0:3, 0:3], -1) == 0.0)


def test_landmark_columns_are_zero(scene):
    dim = scene.layout.min_dim + 6
    cov = np.eye(dim) * 1e-4
    upd = _make_update(scene, [scene.track(0, noise=1e-4)], cov=cov)
    assert upd.jacobian.shape[1] == dim
    assert upd.init_mats.H1.shape[1] == dim
    assert np.all(upd.jacobian[:, scene.layout.min_dim:] == 0.0)


def test_unused_pose_slots_are_zero(scene):
    upd = _make_update(scene, [scene.track(0, n_obs=3)])
    first_used = scene.layout.attitude_idx(3)
    assert np.all(upd.jacobian[:, :first_used] == 0.0)
    last = scene.layout.attitude_idx(scene.n_poses)
    assert np.all(upd.jacobian[:, last:] == 0.0)


def test_covariance_not_modified_and_outputs_read_only(scene):
    cov = scene.cov.copy()
    upd = _make_update(scene, [scene.track(0), scene.track(1)], cov=cov)
    np.testing.assert_array_equal(cov, scene.cov)
    assert cov.flags.writeable

    for a in (upd.jacobian, upd.residual, upd.noise, upd.inliers, upd.outliers,
              upd.init_mats.H1, upd.init_mats.H2, upd.init_mats.r1):
        assert not a.flags.writeable
    with pytest.raises(ValueError):
        upd.jacobian[0, 0] = 1.0


def test_update_is_deterministic(scene):
    tracks = [scene.track(k, noise=1e-3, seed=k) for k in range(4)] + [_inconsistent_track()]
    a = _make_update(scene, tracks)
    b = _make_update(scene, tracks)
    np.testing.assert_array_equal(a.jacobian, b.jacobian)
    np.testing.assert_array_equal(a.residual, b.residual)
    np.testing.assert_array_equal(a.init_mats.H1, b.init_mats.H1)
    np.testing.assert_array_equal(a.outliers, b.outliers)
    assert a.stats == b.stats


def test_track_outside_window_raises(scene):
    bad = Track.from_points(np.zeros((2, 2)), pose_indices=[4, 6])
    tri = _FixedTriangulator(None)
    with pytest.raises(PreconditionError):
        _make_update(scene, [scene.track(0), bad], triangulator=tri)
    # nothing is processed before validation fails
    assert tri.calls == 0


def test_mismatched_pose_lists_raise(scene):
    with pytest.raises(PreconditionError):
        _make_update(scene, [], positions=scene.positions[:-1])


def test_window_larger_than_layout_raises(scene):
    atts = scene.attitudes + scene.attitudes[:3]
    poss = scene.positions + scene.positions[:3]
    with pytest.raises(PreconditionError):
        _make_update(scene, [], attitudes=atts, positions=poss)


def test_small_covariance_raises(scene):
    with pytest.raises(PreconditionError):
        _make_update(scene, [], cov=np.eye(scene.layout.min_dim - 1))


def test_non_finite_covariance_raises(scene):
    cov = scene.cov.copy()
    cov[20, 20] = np.nan
    with pytest.raises(PreconditionError):
        _make_update(scene, [scene.track(0)], cov=cov)


def test_bad_noise_raises(scene):
    with pytest.raises(PreconditionError):
        MsckfSlamUpdate([], scene.attitudes, scene.positions, GaussNewtonTriangulator(),
                        scene.cov, n_poses_max=scene.n_poses_max, sigma_img=0.0)


def test_from_config_matches_direct_construction(scene):
    cfg = MsckfSlamConfig(sigma_img=SIGMA, n_poses_max=scene.n_poses_max)
    tracks = [scene.track(k, noise=1e-3, seed=k) for k in range(3)]
    a = MsckfSlamUpdate.from_config(tracks, scene.attitudes, scene.positions, scene.cov, cfg)
    b = _make_update(scene, tracks)
    np.testing.assert_array_equal(a.jacobian, b.jacobian)
    np.testing.assert_array_equal(a.init_mats.r1, b.init_mats.r1)


def test_print_stats(scene, capsys):
    upd = _make_update(scene, [scene.track(0), scene.track(1, n_obs=1)])
    upd.print_stats()
    out = capsys.readouterr().out
    assert "[MSCKF-SLAM-STATS] Total: 2, Success: 1" in out
    assert "fail_few_obs: 1" in out


def test_debug_prints_rejections(scene, capsys):
    _make_update(scene, [scene.track(0), scene.track(1, n_obs=1)], debug=True)
    out = capsys.readouterr().out
    assert "outlier, fail_few_obs" in out
    assert "[MSCKF-SLAM] 1/2 tracks accepted" in out
