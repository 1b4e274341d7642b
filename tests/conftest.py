import os
import sys

import numpy as np
import pandas as pd
import pytest
from astropy.io import fits

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import allstack  # noqa: E402

ALS_HEADER = [
    " NL    NX    NY  LOWBAD HIGHBAD  THRESH     AP1  PH/ADU  RNOISE    FRAD\n",
    "  1    64    64   100.0 30000.0   20.00    3.00    2.00    2.50    3.00\n",
    "\n",
]


@pytest.fixture
def config():
    return allstack.load_config(os.path.join(ROOT, 'config.yaml'))


def write_frame(path, data, header=None):
    fits.PrimaryHDU(np.asarray(data, dtype=np.float32), header=header).writeto(str(path), overwrite=True)


def write_opt(path, gain=2.0, rdnoise=2.5, fwhm=3.0, hi=30000.0, va=2.0):
    allstack.write_option_file(str(path), {
        'RE': rdnoise, 'GA': gain, 'LO': 7.0, 'HI': hi, 'FW': fwhm,
        'TH': 3.5, 'VA': va, 'FI': 3.0, 'PS': 12.0,
    })


def star_table(stars):
    """Build a DAOPHOT table from (id, x, y, mag) tuples."""
    rows = []
    for star_id, x, y, mag in stars:
        rows.append({'ID': star_id, 'X': x, 'Y': y, 'MAG': mag, 'ERR': 0.01,
                     'SKY': 100.0, 'NITER': 3, 'CHI': 1.0, 'SHARP': 0.0})
    return pd.DataFrame(rows, columns=allstack.ALS_COLUMNS)


def write_als(path, stars, header=None):
    allstack.write_daophot_table(str(path), header or ALS_HEADER, star_table(stars))


def touch(path, text="x\n"):
    with open(str(path), 'w') as f:
        f.write(text)


class FakeRunner:
    """Stands in for run_process; each call consumes one outcome.

    An outcome is 'timeout' or a list of extensions to create for `base`.
    """

    def __init__(self, base, outcomes, opt_path=None):
        self.base = base
        self.outcomes = list(outcomes)
        self.opt_path = opt_path
        self.calls = []

    def __call__(self, argv, cwd=None, timeout=None, stdin_text=None):
        script_path = os.path.join(cwd, argv[-1])
        with open(script_path) as f:
            script = f.read()
        va = None
        if self.opt_path is not None:
            va = allstack.read_option_file(self.opt_path).get('VA')
        self.calls.append({'argv': argv, 'script': script, 'script_path': script_path,
                           'timeout': timeout, 'va': va})

        outcome = self.outcomes.pop(0)
        if outcome == 'timeout':
            return allstack.ProcessResult(None, '', 'killed', True)
        bases = self.base if isinstance(self.base, (list, tuple)) else [self.base]
        for base in bases:
            for ext in outcome:
                touch(os.path.join(cwd, base + ext))
        return allstack.ProcessResult(0, 'engine output\n', '', False)
