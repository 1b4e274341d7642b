#!/usr/bin/env python3
"""
ALLSTACK Pipeline
Stack dithered frames, detect on the deep image and run simultaneous
multi-frame PSF photometry, with all parameters in config.yaml
"""

# Standard library imports
import argparse
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import time
import warnings
from collections import namedtuple

# Third-party imports
import matplotlib
matplotlib.use('Agg')  # Non-interactive backend for batch processing
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import yaml
from astropy.io import fits
from astropy.stats import sigma_clipped_stats, sigma_clip
from astropy.utils.exceptions import AstropyWarning
from scipy.ndimage import shift, affine_transform
from scipy.spatial import cKDTree

# Suppress astropy header/verification chatter
warnings.filterwarnings('ignore', category=AstropyWarning)

# Degenerate-frame bounds on the photometric scale
MIN_SCALE = 1e-5
MAX_SCALE = 900.0

# DAOPHOT conventions
BAD_MAG = 90.0
ALS_COLUMNS = ['ID', 'X', 'Y', 'MAG', 'ERR', 'SKY', 'NITER', 'CHI', 'SHARP']
PHOTO_OPTIONS = 'photo.opt'
ALLFRAME_OPTIONS = 'allframe.opt'

# ALLSTAR options ALLFRAME shares; the rest come from the allframe config section
ALLFRAME_SHARED_KEYS = ['CE', 'CR', 'WA', 'PE', 'PR', 'IS', 'OS']

# Per-frame inputs the simultaneous fit cannot run without, in check order
FIT_PREREQUISITES = ['.fits', '.opt', '.als.opt', '.ap', '.psf', '.als', '.log']

STAGES = ['combine', 'detect', 'allframe', 'merge']

ProcessResult = namedtuple('ProcessResult', ['returncode', 'stdout', 'stderr', 'timed_out'])
Artifact = namedtuple('Artifact', ['path', 'found'])

# ============================================================================
# EXCEPTIONS
# ============================================================================

class AllstackError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ConfigurationError(AllstackError):
    """Raised when directories, scripts or engine binaries are missing."""
    pass


class PrerequisiteMissingError(AllstackError):
    """Raised when a required per-frame file does not exist."""
    pass


class ComputationError(AllstackError):
    """Raised for degenerate weights/scales and non-finite statistics."""
    pass


class EngineError(AllstackError):
    """Raised when an external engine ran but left no usable output."""

    def __init__(self, message, stderr=None, details=None):
        super().__init__(message, details)
        self.stderr = stderr


class PartialMatchWarning(UserWarning):
    """Non-fatal mismatch while joining enrichment columns."""
    pass

# ============================================================================
# CONFIGURATION LOADER
# ============================================================================

def load_config(config_path):
    """Load configuration from YAML file."""
    if config_path is None:
        # Default: look in script directory
        script_dir = os.path.dirname(os.path.abspath(__file__))
        config_path = os.path.join(script_dir, 'config.yaml')
    elif not os.path.isabs(config_path):
        # User specified: use relative to current directory
        config_path = os.path.abspath(config_path)

    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def check_configuration(config, work_dir):
    """Verify the working directory and every engine binary exist.

    Args:
        config: Pipeline configuration dictionary
        work_dir: Directory holding the frames and the transform list

    Raises:
        ConfigurationError: naming the first missing directory or binary
    """
    if not os.path.isdir(work_dir):
        raise ConfigurationError(f"Working directory not found: {work_dir}")

    engines = config.get('engines', {})
    for key in ('shell', 'daophot', 'allstar', 'allframe'):
        command = engines.get(key)
        if not command:
            raise ConfigurationError(f"No '{key}' command configured under 'engines'")
        if shutil.which(command) is None:
            raise ConfigurationError(f"Engine binary not found: {command}", {'engine': key})

# ============================================================================
# ARGUMENT PARSING
# ============================================================================

def parse_arguments():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='ALLSTACK Pipeline - stack dithered frames and run simultaneous PSF photometry'
    )
    parser.add_argument('-m', '--mch', required=True,
                        help='Transform list (.mch) of the frames; frame 0 is the reference')
    parser.add_argument('-c', '--config', default=None,
                        help='Configuration file (default: config.yaml in script directory)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose output')
    parser.add_argument('-s', '--start', choices=STAGES, default=STAGES[0],
                        help='Resume the pipeline at this stage (default: combine)')
    parser.add_argument('--no-trim', action='store_true',
                        help='Keep the full reference geometry instead of the common footprint')

    return parser.parse_args()

# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging(log_file, verbose):
    """Setup logging to pipelog.txt file and console."""
    logger = logging.getLogger()
    logger.setLevel(logging.INFO if verbose else logging.WARNING)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter('%(message)s')

    # File handler (pipelog.txt only)
    fh = logging.FileHandler(log_file, mode='w')
    fh.setLevel(logging.INFO)
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO if verbose else logging.WARNING)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger


def log_big_divider(title: str):
    """Print a big divider block for each pipeline stage."""
    logging.info("")
    logging.info("=" * 80)
    logging.info(f"= {title}")
    logging.info("=" * 80)


def log_small_divider():
    """Print a small divider for individual attempts."""
    logging.info("-" * 60)

# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def get_central_region(data, fraction=0.8):
    """Get central region of array."""
    h, w = data.shape
    margin_h = int(h * (1 - fraction) / 2)
    margin_w = int(w * (1 - fraction) / 2)
    return data[margin_h:h-margin_h, margin_w:w-margin_w]


def expect_artifact(path):
    """Report whether an expected output file exists and is non-empty."""
    found = os.path.isfile(path) and os.path.getsize(path) > 0
    return Artifact(path, found)


def read_option_file(opt_path):
    """Read a DAOPHOT-style key=value option file.

    Keys are reduced to their first two letters, the way DAOPHOT reads them.
    Numeric values are returned as floats.
    """
    if not os.path.exists(opt_path):
        raise PrerequisiteMissingError(f"Option file not found: {opt_path}", {'file': opt_path})

    options = {}
    with open(opt_path, 'r') as f:
        for line in f:
            if '=' not in line:
                continue
            key, value = line.split('=', 1)
            key = key.strip().upper()[:2]
            if not key:
                continue
            value = value.strip()
            try:
                options[key] = float(value)
            except ValueError:
                options[key] = value
    return options


def write_option_file(opt_path, options):
    """Write options in the key = value layout the engines read."""
    with open(opt_path, 'w') as f:
        for key, value in options.items():
            if isinstance(value, (int, float, np.floating, np.integer)):
                f.write(f"{key:<2} = {float(value):10.4f}\n")
            else:
                f.write(f"{key:<2} = {value}\n")


def mask_from_external(external):
    """Convert an external -1 bad / +1 good mask to the internal bad=True mask."""
    return np.asarray(external) <= 0


def mask_to_external(bad):
    """Convert an internal bad=True mask to the external -1 bad / +1 good mask."""
    return np.where(np.asarray(bad, dtype=bool), -1, 1).astype(np.int16)

# ============================================================================
# STEP 0: TRANSFORM LIST AND FRAMES
# ============================================================================

MCH_LINE = re.compile(r"^\s*'([^']*)'\s*(.*)$")


class Transform:
    """Shift plus 2x2 linear part mapping frame pixels onto the reference.

        x_ref = dx + a*x + c*y
        y_ref = dy + b*x + d*y
    """

    def __init__(self, dx=0.0, dy=0.0, a=1.0, b=0.0, c=0.0, d=1.0, extra=()):
        self.dx = float(dx)
        self.dy = float(dy)
        self.a = float(a)
        self.b = float(b)
        self.c = float(c)
        self.d = float(d)
        self.extra = tuple(float(v) for v in extra)

    def __repr__(self):
        return (f"Transform(dx={self.dx:.3f}, dy={self.dy:.3f}, "
                f"a={self.a:.5f}, b={self.b:.5f}, c={self.c:.5f}, d={self.d:.5f})")

    @property
    def matrix(self):
        return np.array([[self.a, self.c], [self.b, self.d]])

    def to_reference(self, x, y):
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        return self.dx + self.a * x + self.c * y, self.dy + self.b * x + self.d * y

    def from_reference(self, x_ref, y_ref):
        inverse = np.linalg.inv(self.matrix)
        u = np.asarray(x_ref, dtype=float) - self.dx
        v = np.asarray(y_ref, dtype=float) - self.dy
        return inverse[0, 0] * u + inverse[0, 1] * v, inverse[1, 0] * u + inverse[1, 1] * v

    def is_translation(self, tol=1e-6):
        return np.allclose(self.matrix, np.eye(2), rtol=0, atol=tol)

    def is_identity(self, tol=1e-6):
        return self.is_translation(tol) and abs(self.dx) <= tol and abs(self.dy) <= tol


def read_transform_list(mch_path):
    """Read a DAOMASTER-style transform list.

    Each row holds a quoted filename, dx, dy, the four linear coefficients
    and up to two optional trailing numbers (kept in Transform.extra).

    Args:
        mch_path: Path to the .mch file

    Returns:
        list: (base, Transform) tuples; entry 0 is the reference

    Raises:
        ComputationError: on unparsable rows or a non-identity reference
    """
    if not os.path.exists(mch_path):
        raise PrerequisiteMissingError(f"Transform list not found: {mch_path}", {'file': mch_path})

    entries = []
    with open(mch_path, 'r') as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            match = MCH_LINE.match(line)
            if match is None:
                raise ComputationError(f"Cannot parse line {lineno} of {mch_path}: {line.strip()}")
            try:
                values = [float(v) for v in match.group(2).split()]
            except ValueError:
                raise ComputationError(f"Non-numeric transform on line {lineno} of {mch_path}")
            if len(values) < 6:
                raise ComputationError(
                    f"Line {lineno} of {mch_path} has {len(values)} coefficients, need 6"
                )
            base = os.path.splitext(match.group(1).strip())[0]
            entries.append((base, Transform(*values[:6], extra=values[6:8])))

    if not entries:
        raise ComputationError(f"No frames listed in {mch_path}")
    if not entries[0][1].is_identity():
        raise ComputationError(
            f"Reference frame {entries[0][0]} in {mch_path} does not have the identity transform"
        )
    return entries


def write_transform_list(mch_path, entries):
    """Write (base, Transform) entries in the DAOMASTER .mch layout."""
    with open(mch_path, 'w') as f:
        for base, t in entries:
            name = f"'{base}.als'"
            line = (f"{name:<24}{t.dx:10.3f}{t.dy:10.3f}"
                    f"{t.a:10.5f}{t.b:10.5f}{t.c:10.5f}{t.d:10.5f}")
            for value in t.extra:
                line += f"{value:10.4f}"
            f.write(line + "\n")


class Frame:
    """One exposure: calibration from its option file and a lazily read raster."""

    def __init__(self, base, directory, transform, options):
        self.base = base
        self.directory = directory
        self.transform = transform
        self.gain = options['GA']
        # option files carry read noise in ADU
        self.rdnoise = options['RE'] * options['GA']
        self.fwhm = options['FW']
        self.saturation = options.get('HI')
        self._data = None

    def __repr__(self):
        return f"Frame({self.base!r})"

    def file(self, ext):
        return os.path.join(self.directory, self.base + ext)

    @property
    def path(self):
        return self.file('.fits')

    @property
    def data(self):
        if self._data is None:
            if not os.path.exists(self.path):
                raise PrerequisiteMissingError(f"Pixel file not found: {self.path}", {'file': self.path})
            with fits.open(self.path) as hdul:
                self._data = hdul[0].data.astype(np.float64)
        return self._data


def load_frames(entries, directory):
    """Build Frame objects for every transform-list entry."""
    frames = []
    for base, transform in entries:
        opt_path = os.path.join(directory, base + '.opt')
        options = read_option_file(opt_path)
        for key in ('GA', 'RE', 'FW'):
            if key not in options or not isinstance(options[key], float):
                raise ComputationError(f"{opt_path} has no numeric {key} entry")
        if options['GA'] <= 0:
            raise ComputationError(f"Non-positive gain in {opt_path}")
        frames.append(Frame(base, directory, transform, options))
    return frames


def load_bad_pixel_mask(frame, config):
    """Build the internal bad-pixel mask (True = bad) of one frame.

    Non-finite and saturated pixels are bad; an optional external mask file
    next to the frame (-1 bad / +1 good) adds its bad pixels.
    """
    data = frame.data
    bad = ~np.isfinite(data)
    if frame.saturation is not None:
        with np.errstate(invalid='ignore'):
            bad |= data >= frame.saturation

    mask_suffix = config.get('paths', {}).get('mask_suffix', '.mask.fits')
    mask_path = frame.file(mask_suffix)
    if os.path.exists(mask_path):
        external = fits.getdata(mask_path)
        if external.shape != data.shape:
            raise ComputationError(
                f"Mask {mask_path} shape {external.shape} != image {data.shape}"
            )
        bad |= mask_from_external(external)
    return bad

# ============================================================================
# STEP 1: WEIGHTS, SCALES AND ZERO OFFSETS
# ============================================================================

def match_positions(det_positions, ref_positions, tolerance):
    """Match positions to reference positions.

    Returns:
    --------
    matched_det_idx : indices of matched positions
    matched_ref_idx : indices of matched reference positions
    """
    tree = cKDTree(ref_positions)
    distances, indices = tree.query(det_positions, k=1)

    # Keep only within tolerance
    valid_mask = distances < tolerance

    # Ensure uniqueness (one reference star per position)
    matched_pairs = {}
    for det_idx in np.where(valid_mask)[0]:
        ref_idx = indices[det_idx]
        dist = distances[det_idx]
        if ref_idx not in matched_pairs or dist < matched_pairs[ref_idx][1]:
            matched_pairs[ref_idx] = (det_idx, dist)

    matched_det_idx = [pair[0] for pair in matched_pairs.values()]
    matched_ref_idx = list(matched_pairs.keys())

    return np.array(matched_det_idx, dtype=int), np.array(matched_ref_idx, dtype=int)


def measure_magnitude_offset(table, transform, ref_table, config, label):
    """Median magnitude offset of a frame's stars against the reference.

    Stars are moved into reference coordinates, matched within the
    configured radius and the offset taken over the brightest matches.
    """
    wcfg = config.get('weights', {})
    match_radius = wcfg.get('match_radius', 2.0)
    min_matches = wcfg.get('min_matches', 3)
    n_bright = wcfg.get('n_bright', 50)

    good = table[table['MAG'] < BAD_MAG]
    ref_good = ref_table[ref_table['MAG'] < BAD_MAG]
    if len(good) == 0 or len(ref_good) == 0:
        raise ComputationError(f"{label}: no measured stars to derive a magnitude offset")

    x_ref, y_ref = transform.to_reference(good['X'].values, good['Y'].values)
    det_idx, ref_idx = match_positions(
        np.column_stack([x_ref, y_ref]),
        np.column_stack([ref_good['X'].values, ref_good['Y'].values]),
        match_radius
    )
    if len(det_idx) < min_matches:
        raise ComputationError(
            f"{label}: only {len(det_idx)} stars matched the reference (need >= {min_matches})"
        )

    dmag = good['MAG'].values[det_idx] - ref_good['MAG'].values[ref_idx]
    brightest = np.argsort(ref_good['MAG'].values[ref_idx])[:n_bright]
    return float(np.median(dmag[brightest])), len(det_idx)


def measure_frame_statistics(frames, masks, config, verbose=False):
    """Measure sky, sky noise and photometric offset of every frame.

    Sky level and sigma come from a sigma-clipped estimate over the central
    region (bad pixels excluded). The magnitude offset against the reference
    comes from the frames' own ALLSTAR lists.

    Args:
        frames: List of Frame objects, reference first
        masks: Matching list of bad-pixel masks (True = bad)
        config: Pipeline configuration dictionary
        verbose: Enable verbose logging

    Returns:
        list: One dict per frame with 'name', 'sky', 'sky_sigma', 'fwhm',
              'gain', 'rdnoise', 'mag_offset', 'n_matched'

    Raises:
        ComputationError: if any frame's statistics cannot be computed
    """
    wcfg = config.get('weights', {})
    central_fraction = wcfg.get('central_fraction', 0.8)
    sky_sigma_clip = wcfg.get('sigma_clip', 3.0)

    stats = []
    ref_table = None
    for idx, (frame, bad) in enumerate(zip(frames, masks)):
        central = get_central_region(frame.data, central_fraction)
        central_bad = get_central_region(bad, central_fraction)
        good_pixels = central[~central_bad & np.isfinite(central)]
        if good_pixels.size == 0:
            raise ComputationError(f"No good pixels to measure the sky of {frame.path}")

        _, sky, sky_sigma = sigma_clipped_stats(good_pixels, sigma=sky_sigma_clip)
        if not np.isfinite(sky) or not np.isfinite(sky_sigma) or sky_sigma <= 0:
            raise ComputationError(
                f"Non-finite sky statistics for {frame.path}: sky={sky}, sigma={sky_sigma}"
            )

        _, table = read_daophot_table(frame.file('.als'))
        if idx == 0:
            ref_table = table
            mag_offset, n_matched = 0.0, len(table)
        else:
            mag_offset, n_matched = measure_magnitude_offset(
                table, frame.transform, ref_table, config, frame.base
            )

        stats.append({
            'name': frame.base,
            'sky': float(sky),
            'sky_sigma': float(sky_sigma),
            'fwhm': frame.fwhm,
            'gain': frame.gain,
            'rdnoise': frame.rdnoise,
            'mag_offset': mag_offset,
            'n_matched': n_matched
        })

        if verbose:
            logging.info(f"  {frame.base}: sky={sky:.2f} sigma={sky_sigma:.2f} "
                         f"dmag={mag_offset:+.3f} ({n_matched} stars)")

    return stats


def neutralize_degenerate_frames(weights, scales, names=None):
    """Exclude frames whose scale falls outside [MIN_SCALE, MAX_SCALE].

    Degenerate frames keep their slot with scale=1 and weight=0, so the
    per-frame arrays stay aligned with the transform list.
    """
    weights = np.array(weights, dtype=float)
    scales = np.array(scales, dtype=float)

    degenerate = (scales < MIN_SCALE) | (scales > MAX_SCALE)
    for idx in np.where(degenerate)[0]:
        label = names[idx] if names is not None else f"frame {idx}"
        logging.warning(f"  {label}: scale {scales[idx]:.4g} outside "
                        f"[{MIN_SCALE:g}, {MAX_SCALE:g}], excluded from the stack")

    scales[degenerate] = 1.0
    weights[degenerate] = 0.0
    return weights, scales


def compute_weights(stats, config, verbose=False):
    """Derive per-frame weight, scale and zero offset.

    Weight ~ (S/N)^2 of a point source: relative flux squared over the
    background noise inside the PSF footprint. Scale brings each frame to
    the reference photometric level, zero removes the sky.

    Args:
        stats: Output of measure_frame_statistics
        config: Pipeline configuration dictionary
        verbose: Enable verbose logging

    Returns:
        dict: 'names', 'weights', 'scales', 'zeros' (numpy arrays); weights
              sum to one over the frames that survive

    Raises:
        ComputationError: on non-finite inputs or zero total weight
    """
    names = [s['name'] for s in stats]
    mag_offsets = np.array([s['mag_offset'] for s in stats], dtype=float)
    fwhm = np.array([s['fwhm'] for s in stats], dtype=float)
    sky = np.array([s['sky'] for s in stats], dtype=float)
    sky_sigma = np.array([s['sky_sigma'] for s in stats], dtype=float)

    for label, values in (('magnitude offset', mag_offsets), ('FWHM', fwhm),
                          ('sky', sky), ('sky sigma', sky_sigma)):
        bad = ~np.isfinite(values)
        if np.any(bad):
            raise ComputationError(f"Non-finite {label} for frame {names[int(np.argmax(bad))]}")

    noise2 = np.pi * fwhm**2 * sky_sigma**2
    if np.any(noise2 <= 0):
        raise ComputationError(f"Zero background noise for frame {names[int(np.argmax(noise2 <= 0))]}")

    flux = 10.0 ** (-0.4 * mag_offsets)
    snr2 = flux**2 / noise2

    if config.get('combine', {}).get('scale', True):
        scales = 1.0 / flux
    else:
        scales = np.ones(len(stats))
    zeros = -sky

    snr2, scales = neutralize_degenerate_frames(snr2, scales, names)
    total = np.sum(snr2)
    if not np.isfinite(total) or total <= 0:
        raise ComputationError("Total weight is zero; no frame can enter the stack")
    weights = snr2 / total

    if verbose:
        for name, w, s, z in zip(names, weights, scales, zeros):
            logging.info(f"  {name}: weight={w:.6f} scale={s:.5f} zero={z:.2f}")

    return {'names': names, 'weights': weights, 'scales': scales, 'zeros': zeros}


def write_weight_files(prefix, weightset):
    """Write .weights, .scale and .zero files, one line per frame."""
    formats = (('.weights', 'weights', '%10.6f'),
               ('.scale', 'scales', '%10.5f'),
               ('.zero', 'zeros', '%10.2f'))
    paths = []
    for ext, key, fmt in formats:
        path = prefix + ext
        with open(path, 'w') as f:
            for value in weightset[key]:
                f.write(fmt % value + "\n")
        paths.append(path)
    return paths

# ============================================================================
# STEP 2: ALIGNMENT
# ============================================================================

def _inverse_affine(transform):
    """Matrix and offset for scipy.ndimage.affine_transform in (row, col) order.

    Transform coefficients are in 1-based pixel coordinates, array indices
    are 0-based.
    """
    inverse = np.linalg.inv(transform.matrix)
    offset_xy = inverse @ np.array([1.0 - transform.dx, 1.0 - transform.dy]) - 1.0
    return inverse[::-1, ::-1], offset_xy[::-1]


def align_frame(data, transform, output_shape=None):
    """Resample a frame onto the reference pixel grid.

    Linear interpolation, pixels falling off the frame are filled with 0.
    """
    if output_shape is None:
        output_shape = data.shape
    output_shape = tuple(output_shape)

    if transform.is_identity() and data.shape == output_shape:
        return data.copy()
    if transform.is_translation() and data.shape == output_shape:
        return shift(data, shift=(transform.dy, transform.dx), order=1, mode='constant', cval=0.0)

    matrix, offset = _inverse_affine(transform)
    return affine_transform(data, matrix, offset=offset, output_shape=output_shape,
                            order=1, mode='constant', cval=0.0)


def align_mask(bad, transform, output_shape=None, tolerance=1e-3):
    """Resample a bad-pixel mask onto the reference grid.

    Any output pixel that draws on a bad input pixel, or on the area
    outside the frame, is bad; resampling never clears a bad pixel.
    """
    if output_shape is None:
        output_shape = bad.shape
    output_shape = tuple(output_shape)

    if transform.is_identity() and bad.shape == output_shape:
        return np.array(bad, dtype=bool)

    badf = np.asarray(bad, dtype=np.float64)
    if transform.is_translation() and bad.shape == output_shape:
        resampled = shift(badf, shift=(transform.dy, transform.dx), order=1, mode='constant', cval=1.0)
    else:
        matrix, offset = _inverse_affine(transform)
        resampled = affine_transform(badf, matrix, offset=offset, output_shape=output_shape,
                                     order=1, mode='constant', cval=1.0)
    return resampled > tolerance


def compute_trim_region(frame_shapes, transforms, reference_shape):
    """Common footprint of all frames on the reference grid.

    Uses integer-rounded shifts.

    Returns:
        tuple: (xlo, xhi, ylo, yhi), inclusive 0-based bounds

    Raises:
        ComputationError: if the frames do not overlap
    """
    ny, nx = reference_shape
    xlo, ylo, xhi, yhi = 0, 0, nx - 1, ny - 1
    for (fny, fnx), t in zip(frame_shapes, transforms):
        ix = int(round(t.dx))
        iy = int(round(t.dy))
        xlo = max(xlo, ix)
        ylo = max(ylo, iy)
        xhi = min(xhi, ix + fnx - 1)
        yhi = min(yhi, iy + fny - 1)

    if xhi < xlo or yhi < ylo:
        raise ComputationError("Frames have no common footprint on the reference grid")
    return xlo, xhi, ylo, yhi


def align_frames(frames, masks, config, trim=None, verbose=False):
    """Align every frame and its mask onto the reference grid.

    Args:
        frames: List of Frame objects, reference first
        masks: Matching list of bad-pixel masks
        config: Pipeline configuration dictionary
        trim: Override alignment.trim from the config when not None
        verbose: Enable verbose logging

    Returns:
        tuple: (aligned_data, aligned_masks, (xoff, yoff)) where the offset
               is the trimmed rectangle's origin on the reference grid
    """
    align_cfg = config.get('alignment', {})
    if trim is None:
        trim = align_cfg.get('trim', True)
    tolerance = align_cfg.get('mask_tolerance', 1e-3)

    reference_shape = frames[0].data.shape
    aligned_data = []
    aligned_masks = []
    for frame, bad in zip(frames, masks):
        aligned_data.append(align_frame(frame.data, frame.transform, reference_shape))
        aligned_masks.append(align_mask(bad, frame.transform, reference_shape, tolerance))
        if verbose:
            logging.info(f"  Aligned {frame.base}: dx={frame.transform.dx:.3f}, dy={frame.transform.dy:.3f}")

    if not trim:
        return aligned_data, aligned_masks, (0, 0)

    xlo, xhi, ylo, yhi = compute_trim_region(
        [f.data.shape for f in frames], [f.transform for f in frames], reference_shape
    )
    aligned_data = [d[ylo:yhi+1, xlo:xhi+1] for d in aligned_data]
    aligned_masks = [m[ylo:yhi+1, xlo:xhi+1] for m in aligned_masks]
    if verbose:
        logging.info(f"  Trimmed to x=[{xlo}:{xhi}], y=[{ylo}:{yhi}]")
    return aligned_data, aligned_masks, (xlo, ylo)

# ============================================================================
# STEP 3: MASK COMBINATION
# ============================================================================

def combine_masks_any_bad(masks):
    """Unscaled path: a pixel is bad if any contributing frame has it bad."""
    return np.any(np.asarray(masks, dtype=bool), axis=0)


def combine_masks_all_bad(rejected):
    """Scaled path: a pixel is bad only if the combiner rejected it in every frame.

    `rejected` is the combiner's own bookkeeping (input bad pixels plus
    sigma-clipped values), since per-frame down-weighting already happened
    there.
    """
    return np.all(np.asarray(rejected, dtype=bool), axis=0)

# ============================================================================
# STEP 4: STACKING
# ============================================================================

def combine_frames(aligned_data, aligned_masks, weights, scales, zeros, config):
    """Weighted, sigma-clipped combination of aligned frames.

    Each frame enters as scale*(frame + zero). Bad pixels are masked before
    the clipping; where values are rejected the remaining weights are
    renormalised to the total weight.

    Args:
        aligned_data: List of aligned rasters (one shape)
        aligned_masks: Matching bad-pixel masks
        weights, scales, zeros: Per-frame arrays
        config: Pipeline configuration dictionary

    Returns:
        tuple: (stack, rejected, used) where rejected is the (n_used, ny, nx)
               rejection cube of the frames with non-zero weight and used the
               boolean index of those frames
    """
    comb_cfg = config.get('combine', {})
    weights = np.asarray(weights, dtype=float)
    scales = np.asarray(scales, dtype=float)
    zeros = np.asarray(zeros, dtype=float)

    used = weights > 0
    if not np.any(used):
        raise ComputationError("Total weight is zero; nothing to combine")

    cube = np.array([s * (d + z) for d, s, z, u in zip(aligned_data, scales, zeros, used) if u])
    bad_cube = np.array([m for m, u in zip(aligned_masks, used) if u], dtype=bool)
    w = weights[used]

    clipped = sigma_clip(
        np.ma.masked_array(cube, mask=bad_cube),
        sigma=comb_cfg.get('sigma', 3.0),
        maxiters=comb_cfg.get('maxiters', 5),
        cenfunc='median', stdfunc='std', axis=0, masked=True
    )
    rejected = np.ma.getmaskarray(clipped)

    accepted_w = np.where(rejected, 0.0, w[:, None, None])
    wsum_accepted = accepted_w.sum(axis=0)
    summed = np.sum(accepted_w * np.where(rejected, 0.0, cube), axis=0)

    ratio = np.zeros_like(wsum_accepted)
    np.divide(w.sum(), wsum_accepted, out=ratio, where=wsum_accepted > 0)
    stack = summed * ratio

    return stack, rejected, used


def combined_read_noise(weights, scales, rdnoises, floor=0.01):
    """Read noise (e-) of the weighted combination, floored at `floor`."""
    weights = np.asarray(weights, dtype=float)
    scales = np.asarray(scales, dtype=float)
    rdnoises = np.asarray(rdnoises, dtype=float)
    rdnoise = float(np.sqrt(np.sum((weights * rdnoises / scales)**2)))
    return max(rdnoise, floor)


def combined_sky(weights, scales, skies, gains, gain):
    """Sky level to add back so the stack background is Poisson at `gain`."""
    weights = np.asarray(weights, dtype=float)
    scales = np.asarray(scales, dtype=float)
    skies = np.maximum(np.asarray(skies, dtype=float), 0.0)
    gains = np.asarray(gains, dtype=float)
    return float(gain * np.sum((weights * np.sqrt(skies / gains) / scales)**2))


def finalize_stack(stack, bad, weights, scales, gains, rdnoises, skies, config):
    """Recompute stack-level gain, read noise and sky; saturate bad pixels.

    Args:
        stack: Weighted combination from combine_frames
        bad: Combined bad-pixel mask
        weights, scales, gains, rdnoises, skies: Per-frame values
        config: Pipeline configuration dictionary

    Returns:
        dict: 'data', 'gain', 'rdnoise', 'sky', 'mask_level', 'rescale'

    Raises:
        ComputationError: on missing or non-finite per-frame values, zero
                          total weight or a stack without good pixels
    """
    comb_cfg = config.get('combine', {})
    max_level = comb_cfg.get('max_level', 50000.0)
    margin = comb_cfg.get('mask_margin', 10000.0)
    floor = comb_cfg.get('rdnoise_floor', 0.01)

    per_frame = {'weights': weights, 'scales': scales, 'gains': gains,
                 'rdnoises': rdnoises, 'skies': skies}
    arrays = {}
    for key, values in per_frame.items():
        if values is None or any(v is None for v in values):
            raise ComputationError(f"Missing per-frame {key} for the stack")
        arr = np.asarray(values, dtype=float)
        if not np.all(np.isfinite(arr)):
            raise ComputationError(f"Non-finite per-frame {key} for the stack")
        arrays[key] = arr

    w = arrays['weights']
    if np.sum(w) <= 0:
        raise ComputationError("Total weight is zero; cannot finalize the stack")

    rdnoise = combined_read_noise(w, arrays['scales'], arrays['rdnoises'], floor)
    gain = float(np.sum(w * arrays['gains']) / np.sum(w))
    sky = combined_sky(w, arrays['scales'], arrays['skies'], arrays['gains'], gain)
    stack = stack + sky

    bad = np.asarray(bad, dtype=bool)
    good = ~bad & np.isfinite(stack)
    if not np.any(good):
        raise ComputationError("Stack has no good pixels")

    # Keep the stack inside the engines' dynamic range
    rescale = 1.0
    stack_max = float(np.max(stack[good]))
    if stack_max > max_level:
        rescale = max_level / stack_max
        stack = stack * rescale
        gain = gain / rescale
        sky = sky * rescale

    mask_level = float(np.max(stack[good])) + margin
    data = np.where(bad, mask_level, stack)

    return {'data': data, 'gain': gain, 'rdnoise': rdnoise, 'sky': sky,
            'mask_level': mask_level, 'rescale': rescale}


def write_stack_options(reference, stack_base, directory, stack, config):
    """Derive the stack's option files from the reference frame's."""
    floor = config.get('combine', {}).get('rdnoise_floor', 0.01)

    options = read_option_file(reference.file('.opt'))
    options['GA'] = stack['gain']
    options['RE'] = max(stack['rdnoise'] / stack['gain'], floor)
    # masked pixels sit above the saturation level
    options['HI'] = stack['mask_level'] - 1000.0
    opt_path = os.path.join(directory, stack_base + '.opt')
    write_option_file(opt_path, options)

    als_opt = reference.file('.als.opt')
    if not os.path.exists(als_opt):
        raise PrerequisiteMissingError(f"Option file not found: {als_opt}", {'file': als_opt})
    stack_als_opt = os.path.join(directory, stack_base + '.als.opt')
    shutil.copy2(als_opt, stack_als_opt)
    return opt_path, stack_als_opt


def stack_frames(frames, masks, weightset, stats, directory, stack_base, config,
                 trim=None, verbose=False):
    """Align, combine and write the stack with its mask and option files.

    The combined mask follows the all-bad policy when the frames were
    photometrically scaled and the any-bad policy otherwise.

    Returns:
        dict: stack info with 'path', 'mask_path', 'gain', 'rdnoise', 'sky',
              'mask_level', 'offset', 'shape'
    """
    if verbose:
        logging.info("Aligning frames...")
    aligned_data, aligned_masks, offset = align_frames(frames, masks, config, trim=trim, verbose=verbose)

    weights = weightset['weights']
    scales = weightset['scales']
    zeros = weightset['zeros']

    if verbose:
        logging.info("Combining frames...")
    stack, rejected, used = combine_frames(aligned_data, aligned_masks, weights, scales, zeros, config)

    scaled = config.get('combine', {}).get('scale', True)
    if scaled:
        bad = combine_masks_all_bad(rejected)
        policy = 'all-bad'
    else:
        bad = combine_masks_any_bad([m for m, u in zip(aligned_masks, used) if u])
        policy = 'any-bad'
    if verbose:
        logging.info(f"  Combined mask ({policy}): {int(np.sum(bad))} bad pixels")

    result = finalize_stack(
        stack, bad, weights, scales,
        [f.gain for f in frames], [f.rdnoise for f in frames], [s['sky'] for s in stats],
        config
    )
    if result['rescale'] != 1.0:
        logging.info(f"  Stack rescaled by {result['rescale']:.5f}; gain now {result['gain']:.4f}")

    # ========== WRITE STACK AND MASK ==========
    stack_path = os.path.join(directory, stack_base + '.fits')
    mask_suffix = config.get('paths', {}).get('mask_suffix', '.mask.fits')
    mask_path = os.path.join(directory, stack_base + mask_suffix)

    header = fits.getheader(frames[0].path).copy()
    header['GAIN'] = (result['gain'], 'Stack gain (e-/ADU)')
    header['RDNOISE'] = (result['rdnoise'], 'Stack read noise (e-)')
    header['SKY'] = (result['sky'], 'Sky level added back (ADU)')
    header['MASKLEV'] = (result['mask_level'], 'Level assigned to bad pixels')
    header['XOFF'] = (offset[0], 'Trim offset in x on the reference grid')
    header['YOFF'] = (offset[1], 'Trim offset in y on the reference grid')
    header['NCOMBINE'] = (int(np.sum(used)), 'Frames entering the stack')
    header['HISTORY'] = f"Combined from {int(np.sum(used))} of {len(frames)} frames, mask policy {policy}"

    fits.PrimaryHDU(result['data'].astype(np.float32), header=header).writeto(stack_path, overwrite=True)
    fits.PrimaryHDU(mask_to_external(bad)).writeto(mask_path, overwrite=True)

    write_stack_options(frames[0], stack_base, directory, result, config)
    generate_preview_jpg(stack_path, config, high_cut=result['mask_level'])

    logging.info(f"  Wrote {os.path.basename(stack_path)} ({result['data'].shape[1]}x{result['data'].shape[0]}), "
                 f"GAIN={result['gain']:.4f} RDNOISE={result['rdnoise']:.3f} SKY={result['sky']:.2f}")

    return {
        'path': stack_path,
        'mask_path': mask_path,
        'gain': result['gain'],
        'rdnoise': result['rdnoise'],
        'sky': result['sky'],
        'mask_level': result['mask_level'],
        'offset': offset,
        'shape': result['data'].shape
    }


def read_stack_info(stack_path):
    """Recover stack info from the header of an existing stack."""
    if not os.path.exists(stack_path):
        raise PrerequisiteMissingError(f"Stack not found: {stack_path}", {'file': stack_path})
    header = fits.getheader(stack_path)
    return {
        'path': stack_path,
        'gain': header.get('GAIN'),
        'rdnoise': header.get('RDNOISE'),
        'sky': header.get('SKY'),
        'mask_level': header.get('MASKLEV'),
        'offset': (int(header.get('XOFF', 0)), int(header.get('YOFF', 0))),
        'shape': (header['NAXIS2'], header['NAXIS1'])
    }


def generate_preview_jpg(fits_path, config, high_cut=None):
    """Generate JPG preview of FITS file.

    Parameters:
    -----------
    fits_path : str
        Path to FITS file
    config : dict
        Configuration dictionary with preview settings
    high_cut : float, optional
        Pixels at or above this level (masked pixels) are left out of the
        display range
    """
    preview_cfg = config.get('preview', {})
    if not preview_cfg.get('enabled', False):
        return

    try:
        with fits.open(fits_path) as hdul:
            data = hdul[0].data

        if data is None or not np.isfinite(data).any():
            return

        figsize = preview_cfg.get('figsize', [8, 8])
        dpi = preview_cfg.get('dpi', 100)
        cmap = preview_cfg.get('colormap', 'gray')
        invert = preview_cfg.get('invert', False)

        valid = np.isfinite(data)
        if high_cut is not None:
            valid &= data < high_cut
        valid_data = data[valid]
        if len(valid_data) == 0:
            return
        vmin = np.percentile(valid_data, preview_cfg.get('percentile_low', 1.0))
        vmax = np.percentile(valid_data, preview_cfg.get('percentile_high', 99.5))

        # Invert colormap if requested (for black stars on white background)
        if invert:
            cmap = cmap + '_r'

        fig, ax = plt.subplots(figsize=figsize, dpi=dpi)
        ax.imshow(data, origin='lower', cmap=cmap, vmin=vmin, vmax=vmax)
        ax.set_axis_off()

        jpg_path = fits_path.replace('.fits', '.jpg')
        plt.savefig(jpg_path, bbox_inches='tight', pad_inches=0, dpi=dpi)
        plt.close(fig)

        logging.debug(f"    Generated preview: {os.path.basename(jpg_path)}")

    except Exception as e:
        logging.warning(f"    Failed to generate preview for {os.path.basename(fits_path)}: {e}")

# ============================================================================
# EXTERNAL ENGINES
# ============================================================================

def _as_text(value):
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def run_process(argv, stdin_text=None, cwd=None, timeout=None):
    """Run a command and capture its output.

    The command runs in its own session. On timeout the whole process group
    is killed, so engines started by a script stop writing with it. A
    timeout is reported through ProcessResult.timed_out rather than raised.

    Raises:
        ConfigurationError: if the command cannot be started at all
    """
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            text=True,
            start_new_session=True,
        )
    except OSError as e:
        raise ConfigurationError(f"Cannot run {argv[0]}: {e}")

    try:
        stdout, stderr = proc.communicate(input=stdin_text, timeout=timeout)
        return ProcessResult(proc.returncode, stdout or '', stderr or '', False)
    except subprocess.TimeoutExpired:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        stdout, stderr = proc.communicate()
        return ProcessResult(None, _as_text(stdout), _as_text(stderr), True)


def heredoc(command, answers, tag='END_ANSWERS'):
    """Feed a newline-terminated answer sequence to an interactive command."""
    lines = [f"{command} << {tag}"] + [str(a) for a in answers] + [tag]
    return "\n".join(lines) + "\n"


def run_engine_script(script_text, script_path, config, runner=run_process, cwd=None, log_path=None):
    """Write a shell script, run it with a timeout and always remove it.

    Engine stdout/stderr is written to `log_path` when given.
    """
    engines = config.get('engines', {})
    shell = engines.get('shell', 'sh')
    timeout = engines.get('timeout', 3600)

    with open(script_path, 'w') as f:
        f.write(script_text)
    try:
        script_arg = os.path.basename(script_path) if cwd else script_path
        result = runner([shell, script_arg], cwd=cwd, timeout=timeout)
    finally:
        if os.path.exists(script_path):
            os.remove(script_path)

    if log_path is not None:
        with open(log_path, 'w') as f:
            f.write(result.stdout)
            if result.stderr:
                f.write(result.stderr)
    return result


def write_photo_options(path, config):
    """Write the aperture-photometry option file (A1.., IS, OS)."""
    det_cfg = config.get('detection', {})
    apertures = det_cfg.get('apertures', [3.0])
    aperture_keys = 'A1 A2 A3 A4 A5 A6 A7 A8 A9 AA AB AC'.split()
    with open(path, 'w') as f:
        for key, radius in zip(aperture_keys, apertures):
            f.write(f"{key} = {float(radius):8.2f}\n")
        f.write(f"IS = {float(det_cfg.get('inner_sky', 20.0)):8.2f}\n")
        f.write(f"OS = {float(det_cfg.get('outer_sky', 35.0)):8.2f}\n")


def remove_files(paths):
    for path in paths:
        if os.path.exists(path):
            os.remove(path)

# ============================================================================
# STEP 5: DETECTION ON THE STACK
# ============================================================================

def clamp_iterations(niter):
    """Inner find/fit passes, bounded to [1, 10]."""
    return int(min(max(int(niter), 1), 10))


def daophot_psf_answers(base, config):
    """FIND, PHOTOMETRY, PICK and PSF on the attached image."""
    det_cfg = config.get('detection', {})
    n_stars = int(det_cfg.get('pick_stars', 200))
    maglim = float(det_cfg.get('pick_maglim', 99.0))
    return [
        'OPTIONS', f'{base}.opt', '',
        f'ATTACH {base}',
        'FIND', '1,1', f'{base}.coo', 'y',
        'PHOTOMETRY', PHOTO_OPTIONS, '', f'{base}.coo', f'{base}.ap',
        'PICK', f'{base}.ap', f'{n_stars},{maglim:.1f}', f'{base}.lst',
        'PSF', f'{base}.ap', f'{base}.lst', f'{base}.psf', '',
        'EXIT',
    ]


def daophot_find_more_answers(base, id_offset):
    """Find residual stars on the subtracted image and append them to the list."""
    sub = f'{base}s'
    return [
        'OPTIONS', f'{base}.opt', '',
        f'ATTACH {sub}',
        'FIND', '1,1', f'{sub}.coo', 'y',
        'PHOTOMETRY', PHOTO_OPTIONS, '', f'{sub}.coo', f'{sub}.ap',
        'OFFSET', f'{sub}.ap', f'{id_offset},0,0,0', f'{sub}.off',
        'APPEND', f'{base}.als', f'{sub}.off', f'{base}.cmb',
        'EXIT',
    ]


def allstar_answers(base, star_list):
    """Image, PSF, input star list, output list, subtracted image."""
    return ['', base, f'{base}.psf', star_list, f'{base}.als', f'{base}s']


def build_detection_script(base, niter, config):
    """Shell script running the PSF build and `niter` ALLSTAR/FIND passes.

    The answer sequence depends only on the base name and configuration.
    """
    engines = config.get('engines', {})
    daophot = engines.get('daophot', 'daophot')
    allstar = engines.get('allstar', 'allstar')
    id_offset = int(config.get('detection', {}).get('id_offset', 100000))
    niter = clamp_iterations(niter)

    products = [f'{base}{ext}' for ext in ('.coo', '.ap', '.lst', '.psf', '.nei', '.als', '.cmb',
                                           's.fits', 's.coo', 's.ap', 's.off')]
    script = "#!/bin/sh\n"
    script += f"rm -f {' '.join(products)}\n"
    script += f"cp {base}.als.opt allstar.opt\n"
    script += heredoc(daophot, daophot_psf_answers(base, config))
    script += heredoc(allstar, allstar_answers(base, f'{base}.ap'))
    for iteration in range(1, niter):
        script += f"rm -f {base}s.coo {base}s.ap {base}s.off {base}.cmb\n"
        script += heredoc(daophot, daophot_find_more_answers(base, iteration * id_offset))
        script += f"rm -f {base}.als {base}s.fits\n"
        script += heredoc(allstar, allstar_answers(base, f'{base}.cmb'))
    script += "rm -f allstar.opt\n"
    return script


def set_psf_order(opt_path, order):
    """Set the spatial PSF variation order (VA) in an option file."""
    options = read_option_file(opt_path)
    options['VA'] = float(order)
    write_option_file(opt_path, options)


def run_detection(stack_base, directory, config, runner=run_process, verbose=False):
    """Build the PSF and star list of the stack, retrying once at linear order.

    States: INIT -> DETECT -> ACCEPT | RETRY -> ACCEPT | FAIL.
    DETECT runs the engine at the configured VA order. If no PSF model comes
    out (or the engine times out) the run moves to RETRY with VA lowered to
    the minimum order; a second failure is FAIL.

    Args:
        stack_base: Base name of the stack in `directory`
        directory: Working directory
        config: Pipeline configuration dictionary
        runner: Process runner (argv, cwd, timeout) -> ProcessResult
        verbose: Enable verbose logging

    Returns:
        dict: 'state', 'order', 'attempts', 'star_list', 'psf'

    Raises:
        EngineError: when both attempts fail, or when the PSF exists but no
                     star list was written
    """
    det_cfg = config.get('detection', {})
    order = int(det_cfg.get('psf_order', 2))
    min_order = int(det_cfg.get('min_order', 1))
    niter = clamp_iterations(det_cfg.get('niter', 2))

    opt_path = os.path.join(directory, stack_base + '.opt')
    if not os.path.exists(opt_path):
        raise PrerequisiteMissingError(f"Option file not found: {opt_path}", {'file': opt_path})
    photo_path = os.path.join(directory, PHOTO_OPTIONS)
    write_photo_options(photo_path, config)

    psf_path = os.path.join(directory, stack_base + '.psf')
    als_path = os.path.join(directory, stack_base + '.als')
    log_path = os.path.join(directory, stack_base + '.log')
    script_path = os.path.join(directory, stack_base + '.detect.sh')

    state = 'INIT'
    logging.info(f"{state}: {stack_base}, VA={order} then VA={min_order} on failure")
    result = None
    try:
        for attempt, va in enumerate([order, min_order], start=1):
            state = 'DETECT' if attempt == 1 else 'RETRY'
            log_small_divider()
            logging.info(f"[{attempt}/2] {state}: {stack_base} with VA={va}, {niter} find/fit passes")

            set_psf_order(opt_path, va)
            result = run_engine_script(
                build_detection_script(stack_base, niter, config),
                script_path, config, runner=runner, cwd=directory, log_path=log_path
            )

            psf = expect_artifact(psf_path)
            if result.timed_out or not psf.found:
                reason = 'timed out' if result.timed_out else f'no PSF model {os.path.basename(psf_path)}'
                logging.info(f"✗ {state} failed for {stack_base}: {reason}")
                continue

            star_list = expect_artifact(als_path)
            if not star_list.found:
                raise EngineError(
                    f"Detection produced {psf_path} but no star list {als_path}",
                    stderr=result.stderr, details={'stage': 'detect'}
                )

            state = 'ACCEPT'
            logging.info(f"✓ {stack_base}: PSF and star list built with VA={va}")
            return {'state': state, 'order': va, 'attempts': attempt,
                    'star_list': als_path, 'psf': psf_path}
    finally:
        # Engine option files are shared by every run in the directory
        remove_files([photo_path, os.path.join(directory, 'allstar.opt')])

    state = 'FAIL'
    raise EngineError(
        f"Detection failed on {stack_base} twice (VA={order}, then VA={min_order}); "
        f"no PSF model {psf_path}",
        stderr=result.stderr if result is not None else None,
        details={'stage': 'detect', 'state': state}
    )

# ============================================================================
# STEP 6: SIMULTANEOUS MULTI-FRAME FIT
# ============================================================================

def check_fit_prerequisites(bases, directory):
    """Check every per-frame input of the simultaneous fit.

    Returns:
        list: Artifact records in check order (frame by frame)
    """
    artifacts = []
    for base in bases:
        for ext in FIT_PREREQUISITES:
            path = os.path.join(directory, base + ext)
            artifacts.append(Artifact(path, os.path.exists(path)))
    return artifacts


def write_master_list(stack_list_path, offset, master_path):
    """Move the stack star list onto the reference grid."""
    header_lines, table = read_daophot_table(stack_list_path)
    table = table.copy()
    table['X'] = table['X'] + offset[0]
    table['Y'] = table['Y'] + offset[1]
    write_daophot_table(master_path, header_lines, table)
    return master_path


def write_allframe_options(reference_opt_path, opt_path, config):
    """Derive allframe.opt from the reference frame's ALLSTAR options."""
    source = read_option_file(reference_opt_path)
    options = {key: source[key] for key in ALLFRAME_SHARED_KEYS if key in source}
    af_cfg = config.get('allframe', {})
    options['GE'] = float(af_cfg.get('geometric_coefficients', 20))
    options['MI'] = float(af_cfg.get('min_iterations', 5))
    options['EX'] = float(af_cfg.get('max_iterations', 40))
    write_option_file(opt_path, options)
    return options


def build_allframe_script(mch_base, bases, config):
    """Shell script feeding ALLFRAME the transform list and master star list."""
    allframe = config.get('engines', {}).get('allframe', 'allframe')
    products = [f'{b}.alf' for b in bases] + [f'{b}j.fits' for b in bases]
    products += [f'{mch_base}.nmg', f'{mch_base}.tfr']
    script = "#!/bin/sh\n"
    script += f"rm -f {' '.join(products)}\n"
    script += heredoc(allframe, ['', f'{mch_base}.mch', f'{mch_base}.mag'])
    return script


def run_simultaneous_fit(entries, stack_base, stack_info, directory, name, config,
                         runner=run_process, verbose=False):
    """Run ALLFRAME over all frames plus the stack.

    Args:
        entries: (base, Transform) list from the transform list
        stack_base: Base name of the stack
        stack_info: Stack info dict (needs 'offset')
        directory: Working directory
        name: Run name; the engine inputs are <name>_allf.mch / .mag
        config: Pipeline configuration dictionary
        runner: Process runner
        verbose: Enable verbose logging

    Returns:
        list: Paths of the per-frame .alf files (original frames only)

    Raises:
        PrerequisiteMissingError: naming the first missing input file
        EngineError: naming the first missing output file
    """
    bases = [base for base, _ in entries] + [stack_base]

    for artifact in check_fit_prerequisites(bases, directory):
        if not artifact.found:
            raise PrerequisiteMissingError(
                f"Required file for the simultaneous fit not found: {artifact.path}",
                {'stage': 'allframe', 'file': artifact.path}
            )

    mch_base = f"{name}_allf"
    xoff, yoff = stack_info['offset']
    write_master_list(
        os.path.join(directory, stack_base + '.als'), (xoff, yoff),
        os.path.join(directory, mch_base + '.mag')
    )
    write_transform_list(
        os.path.join(directory, mch_base + '.mch'),
        list(entries) + [(stack_base, Transform(dx=xoff, dy=yoff))]
    )

    if verbose:
        logging.info(f"  Fitting {len(bases)} images simultaneously ({mch_base}.mch)")

    opt_path = os.path.join(directory, ALLFRAME_OPTIONS)
    write_allframe_options(os.path.join(directory, entries[0][0] + '.als.opt'), opt_path, config)
    try:
        result = run_engine_script(
            build_allframe_script(mch_base, bases, config),
            os.path.join(directory, mch_base + '.sh'), config, runner=runner, cwd=directory,
            log_path=os.path.join(directory, mch_base + '.log')
        )
    finally:
        remove_files([opt_path])
    if result.timed_out:
        raise EngineError(f"ALLFRAME timed out on {mch_base}.mch", stderr=result.stderr,
                          details={'stage': 'allframe'})

    alf_paths = []
    for base in bases:
        output = expect_artifact(os.path.join(directory, base + '.alf'))
        if not output.found:
            raise EngineError(f"ALLFRAME produced no output {output.path}", stderr=result.stderr,
                              details={'stage': 'allframe'})
        alf_paths.append(output.path)

    return alf_paths[:len(entries)]

# ============================================================================
# STEP 7: MAGNITUDE MERGE
# ============================================================================

def read_daophot_table(path):
    """Read a DAOPHOT photometry file (.als, .alf, .mag).

    Returns:
        tuple: (header_lines, DataFrame) where header_lines are the first
               three lines verbatim and the table has ALS_COLUMNS
    """
    if not os.path.exists(path):
        raise PrerequisiteMissingError(f"Photometry file not found: {path}", {'file': path})

    with open(path, 'r') as f:
        lines = f.readlines()
    header_lines = lines[:3]

    rows = [line.split() for line in lines[3:] if line.strip()]
    if not rows:
        return header_lines, pd.DataFrame(columns=ALS_COLUMNS)

    table = pd.DataFrame([row[:len(ALS_COLUMNS)] for row in rows], columns=ALS_COLUMNS)
    table = table.apply(pd.to_numeric)
    table['ID'] = table['ID'].astype(int)
    return header_lines, table


def write_daophot_table(path, header_lines, table):
    """Write a DAOPHOT photometry file with the given header."""
    with open(path, 'w') as f:
        f.writelines(header_lines)
        for row in table.itertuples(index=False):
            f.write(f"{int(row.ID):7d}{row.X:9.3f}{row.Y:9.3f}{row.MAG:9.4f}{row.ERR:9.4f}"
                    f"{row.SKY:9.3f}{row.NITER:9.0f}{row.CHI:9.3f}{row.SHARP:9.3f}\n")


def read_classification(path):
    """Read an ID, FLAG, PROB classification list."""
    table = pd.read_csv(path, sep=r'\s+', comment='#', header=None, usecols=[0, 1, 2],
                        names=['ID', 'FLAG', 'PROB'])
    table['ID'] = table['ID'].astype(int)
    return table


def merge_magnitudes(master, frame_tables, names, config, classification=None):
    """Join per-frame fitted magnitudes into one row per master star.

    Row order follows the master list. Stars a frame did not fit get the
    missing-magnitude defaults; CHI and SHARP are averaged over the frames
    that fitted the star. An optional classification list is joined by ID;
    unmatched rows are defaulted and counted, never fatal.

    Args:
        master: Master star list (DataFrame with ID, X, Y)
        frame_tables: One fitted table per frame (ALS_COLUMNS)
        names: Frame names, same order as frame_tables
        config: Pipeline configuration dictionary
        classification: Optional DataFrame with ID, FLAG, PROB

    Returns:
        tuple: (merged DataFrame, number of rows without classification)
    """
    merge_cfg = config.get('merge', {})
    missing_mag = merge_cfg.get('missing_mag', 99.9999)
    missing_err = merge_cfg.get('missing_err', 9.9999)

    merged = master[['ID', 'X', 'Y']].drop_duplicates('ID').reset_index(drop=True)
    chi_cols = []
    sharp_cols = []
    for idx, (name, table) in enumerate(zip(names, frame_tables)):
        fitted = table[table['MAG'] < BAD_MAG].drop_duplicates('ID')
        fitted = fitted[['ID', 'MAG', 'ERR', 'CHI', 'SHARP']].rename(columns={
            'MAG': f'MAG_{idx}', 'ERR': f'ERR_{idx}',
            'CHI': f'CHI_{idx}', 'SHARP': f'SHARP_{idx}'
        })
        merged = merged.merge(fitted, on='ID', how='left')
        chi_cols.append(f'CHI_{idx}')
        sharp_cols.append(f'SHARP_{idx}')

    merged['CHI'] = merged[chi_cols].mean(axis=1, skipna=True).fillna(missing_mag)
    merged['SHARP'] = merged[sharp_cols].mean(axis=1, skipna=True).fillna(missing_mag)
    merged = merged.drop(columns=chi_cols + sharp_cols)
    for idx in range(len(frame_tables)):
        merged[f'MAG_{idx}'] = merged[f'MAG_{idx}'].fillna(missing_mag)
        merged[f'ERR_{idx}'] = merged[f'ERR_{idx}'].fillna(missing_err)

    n_unmatched = 0
    if classification is not None:
        merged = merged.merge(classification.drop_duplicates('ID'), on='ID', how='left')
        n_unmatched = int(merged['FLAG'].isna().sum())
        merged['FLAG'] = merged['FLAG'].fillna(merge_cfg.get('default_flag', -1)).astype(int)
        merged['PROB'] = merged['PROB'].fillna(merge_cfg.get('default_prob', -1.0))
        if n_unmatched > 0:
            message = f"{n_unmatched} of {len(merged)} stars have no classification match"
            logging.warning(f"{PartialMatchWarning.__name__}: {message}")
            warnings.warn(message, PartialMatchWarning, stacklevel=2)

    return merged, n_unmatched


def write_merged_catalog(path, header_lines, merged, n_frames):
    """Write the merged catalog: engine header, then one fixed-width row per star."""
    has_class = 'FLAG' in merged.columns
    with open(path, 'w') as f:
        f.writelines(header_lines)
        for _, row in merged.iterrows():
            line = f"{int(row['ID']):7d}{row['X']:9.3f}{row['Y']:9.3f}"
            for idx in range(n_frames):
                line += f"{row[f'MAG_{idx}']:9.4f}{row[f'ERR_{idx}']:9.4f}"
            line += f"{row['CHI']:9.4f}{row['SHARP']:9.4f}"
            if has_class:
                line += f"{int(row['FLAG']):5d}{row['PROB']:7.2f}"
            f.write(line + "\n")


def merge_catalog(entries, stack_base, directory, name, config, verbose=False):
    """Merge the per-frame .alf files into <name>.cat.

    Returns:
        tuple: (catalog path, number of stars)
    """
    merge_cfg = config.get('merge', {})
    names = [base for base, _ in entries]

    _, master = read_daophot_table(os.path.join(directory, f"{name}_allf.mag"))
    header_lines = None
    frame_tables = []
    for base in names:
        lines, table = read_daophot_table(os.path.join(directory, base + '.alf'))
        if header_lines is None:
            header_lines = lines
        frame_tables.append(table)

    classification = None
    class_pattern = config.get('paths', {}).get('classification')
    if class_pattern:
        class_path = os.path.join(directory, class_pattern.format(stack=stack_base, name=name))
        if os.path.exists(class_path):
            classification = read_classification(class_path)
            if verbose:
                logging.info(f"  Joining classification from {os.path.basename(class_path)}")
        else:
            logging.info(f"  No classification list {os.path.basename(class_path)}, skipping")

    merged, _ = merge_magnitudes(master, frame_tables, names, config, classification)

    catalog_path = os.path.join(directory, name + merge_cfg.get('catalog_suffix', '.cat'))
    write_merged_catalog(catalog_path, header_lines, merged, len(names))
    return catalog_path, len(merged)

# ============================================================================
# MAIN
# ============================================================================

def main():
    # Start timer
    start_time = time.time()

    args = parse_arguments()
    config = load_config(args.config)

    mch_path = os.path.abspath(args.mch)
    directory = os.path.dirname(mch_path)
    name = os.path.splitext(os.path.basename(mch_path))[0]
    stack_base = f"{name}_comb"
    start = STAGES.index(args.start)
    trim = False if args.no_trim else None

    log_file = os.path.join(directory, config.get('paths', {}).get('log_file', 'pipelog.txt'))
    setup_logging(log_file, args.verbose)

    logging.info("=" * 80)
    logging.info("ALLSTACK Pipeline")
    logging.info("=" * 80)
    logging.info(f"Transform list: {mch_path}")
    logging.info(f"Config file: {args.config}")
    logging.info(f"Starting at stage: {args.start}")

    try:
        check_configuration(config, directory)
        entries = read_transform_list(mch_path)
        logging.info(f"Frames: {len(entries)} (reference {entries[0][0]})")

        # Step 1-4: weights, alignment, combination
        stack_info = None
        if start <= STAGES.index('combine'):
            log_big_divider(f"Combining {len(entries)} frames into {stack_base}")
            frames = load_frames(entries, directory)
            masks = [load_bad_pixel_mask(frame, config) for frame in frames]
            stats = measure_frame_statistics(frames, masks, config, args.verbose)
            weightset = compute_weights(stats, config, args.verbose)
            write_weight_files(os.path.join(directory, name), weightset)
            stack_info = stack_frames(frames, masks, weightset, stats, directory, stack_base,
                                      config, trim=trim, verbose=args.verbose)

        # Step 5: detection on the stack
        if start <= STAGES.index('detect'):
            log_big_divider(f"Detection on {stack_base}")
            detection = run_detection(stack_base, directory, config, verbose=args.verbose)
            logging.info(f"  Star list: {os.path.basename(detection['star_list'])} "
                         f"(VA={detection['order']}, attempts={detection['attempts']})")

        # Step 6: simultaneous fit
        if start <= STAGES.index('allframe'):
            log_big_divider(f"Simultaneous fit of {len(entries)} frames plus {stack_base}")
            if stack_info is None:
                stack_info = read_stack_info(os.path.join(directory, stack_base + '.fits'))
            alf_paths = run_simultaneous_fit(entries, stack_base, stack_info, directory, name,
                                             config, verbose=args.verbose)
            logging.info(f"  {len(alf_paths)} per-frame fits written")

        # Step 7: merge
        log_big_divider(f"Merging magnitudes into {name}")
        catalog_path, n_stars = merge_catalog(entries, stack_base, directory, name, config, args.verbose)
        logging.info(f"  Catalog: {os.path.basename(catalog_path)} ({n_stars} stars)")

    except AllstackError as e:
        logging.error("")
        logging.error("=" * 80)
        logging.error(f"FATAL ERROR ({type(e).__name__}): {e}")
        if isinstance(e, EngineError) and e.stderr:
            logging.error("Engine stderr:")
            logging.error(e.stderr.strip())
        logging.error("Partial outputs are left in place; fix the cause and resume with --start.")
        logging.error("=" * 80)
        sys.exit(1)

    # Print elapsed time
    elapsed_time = time.time() - start_time
    minutes = int(elapsed_time // 60)
    seconds = elapsed_time % 60

    logging.info("=" * 80)
    if minutes > 0:
        logging.info(f"Total elapsed time: {minutes}m {seconds:.1f}s")
    else:
        logging.info(f"Total elapsed time: {seconds:.1f}s")
    logging.info("=" * 80)

if __name__ == "__main__":
    main()
