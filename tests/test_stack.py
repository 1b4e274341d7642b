import os

import numpy as np
import pytest
from astropy.io import fits

import allstack
from conftest import write_frame, write_opt, touch


def shifted_copy(truth, dx, dy):
    """Frame whose pixel (x, y) shows truth at (x + dx, y + dy); zero elsewhere."""
    ny, nx = truth.shape
    frame = np.zeros_like(truth)
    for y in range(ny):
        for x in range(nx):
            if 0 <= y + dy < ny and 0 <= x + dx < nx:
                frame[y, x] = truth[y + dy, x + dx]
    return frame


def test_any_bad_and_all_bad_policies():
    masks = np.zeros((3, 4, 4), dtype=bool)
    masks[0, 1, 1] = True
    masks[:, 2, 3] = True

    any_bad = allstack.combine_masks_any_bad(masks)
    all_bad = allstack.combine_masks_all_bad(masks)

    assert any_bad[1, 1] and any_bad[2, 3]
    assert any_bad.sum() == 2
    assert not all_bad[1, 1] and all_bad[2, 3]
    assert all_bad.sum() == 1


def test_external_mask_convention():
    external = np.array([[1, -1], [1, 1]])

    bad = allstack.mask_from_external(external)

    np.testing.assert_array_equal(bad, [[False, True], [False, False]])
    np.testing.assert_array_equal(allstack.mask_to_external(bad), external)


def test_read_noise_grows_with_frame_read_noise():
    weights = [0.5, 0.3, 0.2]
    scales = [1.0, 1.2, 0.9]

    low = allstack.combined_read_noise(weights, scales, [3.0, 3.0, 3.0])
    high = allstack.combined_read_noise(weights, scales, [3.0, 6.0, 3.0])

    assert high > low
    assert low == pytest.approx(np.sqrt((0.5 * 3.0)**2 + (0.3 * 3.0 / 1.2)**2 + (0.2 * 3.0 / 0.9)**2))


def test_read_noise_floor():
    assert allstack.combined_read_noise([1.0], [1.0], [0.0]) == 0.01
    assert allstack.combined_read_noise([1.0], [1.0], [0.0], floor=0.5) == 0.5


def test_combine_renormalizes_rejected_values(config):
    data = [np.full((3, 3), 10.0), np.full((3, 3), 20.0)]
    masks = [np.zeros((3, 3), dtype=bool), np.zeros((3, 3), dtype=bool)]
    masks[1][0, 0] = True

    stack, rejected, used = allstack.combine_frames(
        data, masks, np.array([0.75, 0.25]), np.ones(2), np.zeros(2), config
    )

    assert stack[1, 1] == pytest.approx(0.75 * 10.0 + 0.25 * 20.0)
    # only frame 0 is accepted at (0, 0); its value is carried at full weight
    assert stack[0, 0] == pytest.approx(10.0)
    assert rejected[1, 0, 0] and not rejected[0, 0, 0]
    assert used.all()


def test_zero_weight_frames_do_not_contribute(config):
    data = [np.full((2, 2), 10.0), np.full((2, 2), 1e6)]
    masks = [np.zeros((2, 2), dtype=bool)] * 2

    stack, rejected, used = allstack.combine_frames(
        data, masks, np.array([1.0, 0.0]), np.ones(2), np.zeros(2), config
    )

    np.testing.assert_allclose(stack, 10.0)
    assert list(used) == [True, False]
    assert rejected.shape == (1, 2, 2)


def test_three_frame_stack_end_to_end(config):
    rng = np.random.default_rng(42)
    shape = (40, 50)
    shifts = [(0, 0), (2, 1), (-1, 3)]
    skies = [100.0, 120.0, 90.0]
    weights = np.array([0.5, 0.3, 0.2])
    scales = np.ones(3)
    zeros = -np.array(skies)
    gains = [2.0, 2.0, 2.0]

    truths = [rng.uniform(0.0, 20.0, shape) + sky for sky in skies]
    frames = [shifted_copy(truth, dx, dy) for truth, (dx, dy) in zip(truths, shifts)]
    transforms = [allstack.Transform(dx=dx, dy=dy) for dx, dy in shifts]

    aligned = [allstack.align_frame(f, t) for f, t in zip(frames, transforms)]
    masks = [allstack.align_mask(np.zeros(shape, dtype=bool), t) for t in transforms]
    xlo, xhi, ylo, yhi = allstack.compute_trim_region([shape] * 3, transforms, shape)
    aligned = [a[ylo:yhi+1, xlo:xhi+1] for a in aligned]
    masks = [m[ylo:yhi+1, xlo:xhi+1] for m in masks]
    assert not np.any(masks)

    stack, rejected, _ = allstack.combine_frames(aligned, masks, weights, scales, zeros, config)
    bad = allstack.combine_masks_all_bad(rejected)
    result = allstack.finalize_stack(stack, bad, weights, scales, gains, [5.0] * 3, skies, config)

    expected = sum(w * (t[ylo:yhi+1, xlo:xhi+1] - sky) for w, t, sky in zip(weights, truths, skies))
    comb_sky = 2.0 * sum((w * np.sqrt(sky / 2.0))**2 for w, sky in zip(weights, skies))
    assert result['sky'] == pytest.approx(comb_sky)
    assert result['gain'] == pytest.approx(2.0)
    assert result['rescale'] == 1.0
    np.testing.assert_allclose(result['data'], expected + comb_sky, rtol=1e-10)


def test_dynamic_range_guard(config):
    stack = np.full((10, 10), 1000.0)
    stack[5, 5] = 100000.0
    stack[0, 0] = 1e9
    bad = np.zeros((10, 10), dtype=bool)
    bad[0, 0] = True

    result = allstack.finalize_stack(stack, bad, [1.0], [1.0], [2.0], [5.0], [0.0], config)

    good = ~bad
    assert result['rescale'] == pytest.approx(0.5)
    assert result['data'][good].max() == pytest.approx(50000.0)
    assert result['gain'] == pytest.approx(4.0)
    assert result['rdnoise'] == pytest.approx(5.0)
    assert result['mask_level'] == pytest.approx(60000.0)
    assert result['data'][0, 0] == result['mask_level']
    assert result['data'][good].max() < result['mask_level']


def test_missing_frame_statistic_is_fatal(config):
    stack = np.ones((4, 4))
    bad = np.zeros((4, 4), dtype=bool)

    with pytest.raises(allstack.ComputationError, match="skies"):
        allstack.finalize_stack(stack, bad, [0.5, 0.5], [1.0, 1.0], [2.0, 2.0], [5.0, 5.0],
                                [100.0, None], config)


def test_zero_total_weight_cannot_finalize(config):
    stack = np.ones((4, 4))
    bad = np.zeros((4, 4), dtype=bool)

    with pytest.raises(allstack.ComputationError, match="Total weight"):
        allstack.finalize_stack(stack, bad, [0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [5.0, 5.0],
                                [100.0, 100.0], config)


def make_stack_inputs(tmp_path, config, transforms, weights):
    """Write noisy 30x30 frames with their option files and load them."""
    rng = np.random.default_rng(7)
    shape = (30, 30)
    entries = [(f"obj{i + 1}", t) for i, t in enumerate(transforms)]
    for base, _ in entries:
        write_frame(tmp_path / f"{base}.fits", 100.0 + rng.normal(0.0, 3.0, shape))
        write_opt(tmp_path / f"{base}.opt", gain=2.0, rdnoise=2.0)
        touch(tmp_path / f"{base}.als.opt", "FI =     3.00\nIS =    20.00\nOS =    35.00\n")
    frames = allstack.load_frames(entries, str(tmp_path))
    masks = [allstack.load_bad_pixel_mask(f, config) for f in frames]
    stats = [{'sky': 100.0} for _ in entries]
    n = len(entries)
    weightset = {'weights': np.array(weights), 'scales': np.ones(n), 'zeros': np.full(n, -100.0)}
    return frames, masks, weightset, stats


def test_stack_frames_writes_outputs(tmp_path, config):
    frames, masks, weightset, stats = make_stack_inputs(
        tmp_path, config, [allstack.Transform(), allstack.Transform(dx=2.0, dy=1.0)], [0.6, 0.4]
    )

    info = allstack.stack_frames(frames, masks, weightset, stats, str(tmp_path), 'obj_comb', config)

    assert info['offset'] == (2, 1)
    assert info['shape'] == (29, 28)
    assert os.path.exists(info['path'])
    assert os.path.exists(info['mask_path'])

    header = fits.getheader(info['path'])
    assert header['XOFF'] == 2 and header['YOFF'] == 1
    assert header['NCOMBINE'] == 2
    assert header['GAIN'] == pytest.approx(2.0)
    mask = fits.getdata(info['mask_path'])
    assert set(np.unique(mask)) <= {-1, 1}

    options = allstack.read_option_file(str(tmp_path / "obj_comb.opt"))
    assert options['GA'] == pytest.approx(2.0)
    assert options['HI'] == pytest.approx(info['mask_level'] - 1000.0, abs=1e-3)
    assert os.path.exists(tmp_path / "obj_comb.als.opt")

    back = allstack.read_stack_info(info['path'])
    assert back['offset'] == (2, 1)
    assert back['shape'] == (29, 28)


def test_external_mask_and_saturation_mark_bad_pixels(tmp_path, config):
    data = np.full((6, 6), 100.0)
    data[1, 1] = 40000.0
    data[2, 2] = np.nan
    write_frame(tmp_path / "f.fits", data)
    write_opt(tmp_path / "f.opt", hi=30000.0)
    external = np.ones((6, 6), dtype=np.int16)
    external[4, 5] = -1
    fits.PrimaryHDU(external).writeto(str(tmp_path / "f.mask.fits"))

    frame = allstack.load_frames([('f', allstack.Transform())], str(tmp_path))[0]
    bad = allstack.load_bad_pixel_mask(frame, config)

    assert bad[1, 1] and bad[2, 2] and bad[4, 5]
    assert bad.sum() == 3


def test_stack_without_trim_keeps_reference_grid(tmp_path, config):
    frames, masks, weightset, stats = make_stack_inputs(
        tmp_path, config, [allstack.Transform(), allstack.Transform(dx=2.0, dy=1.0)], [0.6, 0.4]
    )

    info = allstack.stack_frames(frames, masks, weightset, stats, str(tmp_path), 'obj_comb', config,
                                 trim=False)

    assert info['offset'] == (0, 0)
    assert info['shape'] == (30, 30)
    header = fits.getheader(info['path'])
    assert header['XOFF'] == 0 and header['YOFF'] == 0
    assert fits.getdata(info['mask_path']).shape == (30, 30)
    assert allstack.read_stack_info(info['path'])['offset'] == (0, 0)


@pytest.mark.parametrize('scale, n_bad', [(False, 1), (True, 0)])
def test_mask_policy_follows_scaling(tmp_path, config, scale, n_bad):
    config['combine']['scale'] = scale
    identity = [allstack.Transform(), allstack.Transform(), allstack.Transform()]
    external = np.ones((30, 30), dtype=np.int16)
    external[4, 5] = -1
    fits.PrimaryHDU(external).writeto(str(tmp_path / "obj2.mask.fits"))
    frames, masks, weightset, stats = make_stack_inputs(tmp_path, config, identity, [0.4, 0.3, 0.3])
    assert masks[1][4, 5]

    info = allstack.stack_frames(frames, masks, weightset, stats, str(tmp_path), 'obj_comb', config)

    mask = fits.getdata(info['mask_path'])
    # unscaled frames use any-bad; scaled frames only lose pixels bad everywhere
    assert int(np.sum(mask == -1)) == n_bad
    assert (mask[4, 5] == -1) == (not scale)
