"""
POD Click File Reader
=====================
User-level reading of C-POD / F-POD files on top of `pod_decode`:
click timestamps, frequency from inter-peak intervals, trimming of the
pseudo-wave samples, a summary table and a command-line entry point.

    pod-read <file.FP3> [--full] [--plot] [--verbose]

Clicks table columns (after `read_pod`)
---------------------------------------
time           datetime64[us]  Click time (naive, as logged by the pod)
minute         int             Minutes since the first logged minute
microsec       int             Microseconds since the start of the minute
click_no       int             1-based click number
train_id       int             KERNO train ID (xP3 files)
species        str             NBHF, OtherCet, Unclassed, Sonar or ''
quality_level  int             1 (Lo), 2 (Mod), 3 (Hi); 0 if unclassified
echo           bool            Click may be an echo of a classified click
ncyc           int             Number of cycles in the click
pkat           int             Cycle with the highest amplitude
khz            int             Frequency of the peak cycle
amp_at_max     int             Amplitude of the loudest cycle
has_wav        bool            A pseudo-wave was logged for the click

With ``simplify=False`` the raw columns clk_ipi_range, ipi_pre_max,
ipi_at_max, amp_reversals and duration are kept as well.
"""

import logging
import os
import sys

import numpy as np

from pod_decode import FAMILY_FPOD, read_pod_file

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Pod clocks count minutes from 1900-01-01 00:00
POD_EPOCH = np.datetime64('1900-01-01T00:00:00', 'us')

# IPIs are in 250 ns units: f[kHz] = 1 / (ipi * 0.25 us) = 4000 / ipi
IPI_KHZ_FACTOR = 4000.0

# FPGA versions above this report the IPI at the peak cycle reliably
FPGA_IPI_AT_MAX_VERSION = 801

SIMPLIFY_DROP = ('clk_ipi_range', 'ipi_pre_max', 'ipi_at_max',
                 'amp_reversals', 'duration')


# ---------------------------------------------------------------------------
# Derived columns
# ---------------------------------------------------------------------------

def click_times(header, clicks):
    """Absolute click times as datetime64[us].

    time = 1900-01-01 + (first_logged_min + minute) min + microsec us
    """
    minutes = header.first_logged_min + clicks['minute'].astype(np.int64)
    us = minutes * 60_000_000 + clicks['microsec'].astype(np.int64)
    return POD_EPOCH + us.astype('timedelta64[us]')


def khz_from_ipi(ipi):
    """Convert inter-peak intervals (250 ns units) to kHz; 0 maps to 0."""
    ipi = np.asarray(ipi, dtype=np.float64)
    khz = np.rint(IPI_KHZ_FACTOR / np.where(ipi > 0, ipi, 1.0))
    return np.where(ipi > 0, khz, 0).astype(np.int32)


def local_ipi(header, clicks):
    """IPI column used for frequency: at-max on newer FPGAs, else pre-max."""
    if header.fpga_ver is not None and header.fpga_ver > FPGA_IPI_AT_MAX_VERSION:
        return clicks['ipi_at_max']
    return clicks['ipi_pre_max']


def trim_wav(wav, clicks):
    """Keep only the last `ncyc` wave samples of each click.

    Wave rows for clicks missing from `clicks` are dropped.
    """
    click_no = wav['click_no']
    if len(click_no) == 0:
        return wav

    ncyc_by_click = dict(zip(clicks['click_no'].tolist(), clicks['ncyc'].tolist()))
    keep = np.zeros(len(click_no), dtype=bool)
    starts = np.flatnonzero(np.r_[True, click_no[1:] != click_no[:-1]])
    ends = np.r_[starts[1:], len(click_no)]
    for s, e in zip(starts, ends):
        ncyc = ncyc_by_click.get(int(click_no[s]))
        if ncyc is None:
            continue
        first = max(1, (e - s) - ncyc + 1)
        keep[s + first - 1:e] = True
    return {k: v[keep] for k, v in wav.items()}


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def read_pod(filepath, simplify=True):
    """Read a C-POD or F-POD file (.CP1, .CP3, .FP1, .FP3).

    Parameters
    ----------
    filepath : str or pathlib.Path
        Path to the POD file.
    simplify : bool
        If True (default), drop the raw click columns listed in
        SIMPLIFY_DROP.

    Returns
    -------
    dict with keys:
        'header' : PodHeader
        'clicks' : dict of arrays, 'time' first
        'env'    : dict of arrays 'minute', 'degC', 'bat1v', 'bat2v'
                   (F-POD files with minute markers only).  Battery
                   voltages are in units of 10 mV.
        'wav'    : dict of arrays 'click_no', 'IPI', 'SPL'
    """
    ret = read_pod_file(filepath)
    header = ret['header']
    clicks = ret['clicks']

    if header.family == FAMILY_FPOD:
        clicks['khz'] = khz_from_ipi(local_ipi(header, clicks))

    if len(clicks['click_no']) > 0:
        clicks = {'time': click_times(header, clicks), **clicks}

    if len(ret['wav']['click_no']) > 0:
        ret['wav'] = trim_wav(ret['wav'], clicks)

    if simplify:
        for col in SIMPLIFY_DROP:
            clicks.pop(col, None)

    ret['clicks'] = clicks
    return ret


def summarize(parsed):
    """Counts for a parsed file: clicks, clicks per species, minutes, waves."""
    clicks = parsed['clicks']
    species, counts = np.unique(clicks['species'], return_counts=True)
    n_minutes = len(parsed['env']['minute']) if 'env' in parsed else \
        len(np.unique(clicks['minute']))
    summary = {
        'clicks': len(clicks['click_no']),
        'species': {s or 'unclassified': int(c) for s, c in zip(species, counts)},
        'minutes': n_minutes,
        'wav_clicks': len(np.unique(parsed['wav']['click_no'])),
    }
    if 'time' in clicks:
        summary['first_click'] = clicks['time'][0]
        summary['last_click'] = clicks['time'][-1]
    return summary


def print_summary(parsed):
    """Print the header and a summary table of a parsed POD file."""
    header = parsed['header']
    s = summarize(parsed)
    print(f"{'Field':<20} Value")
    print('-' * 58)
    for key, value in header.as_dict().items():
        print(f"  {key:<18} {value!r}")
    print()
    print(f"  {'Clicks':<18} {s['clicks']:>10}")
    for name, count in sorted(s['species'].items(), key=lambda kv: kv[1], reverse=True):
        print(f"    {name:<16} {count:>10}")
    print(f"  {'Minutes':<18} {s['minutes']:>10}")
    print(f"  {'Clicks with wave':<18} {s['wav_clicks']:>10}")
    if 'first_click' in s:
        print(f"  {'First click':<18} {s['first_click']}")
        print(f"  {'Last click':<18} {s['last_click']}")


def plot_pod(parsed, outpath=None):
    """Diagnostic plot: clicks per minute, species counts, temperature/batteries.

    Parameters
    ----------
    parsed : dict, output from read_pod()
    outpath : str or Path or None, save to file; if None, plt.show()
    """
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    header = parsed['header']
    clicks = parsed['clicks']
    env = parsed.get('env')

    fig, axes = plt.subplots(3, 1, figsize=(12, 10), constrained_layout=True)
    fig.suptitle(f"{header.filetype} pod {header.pod_id!s}".strip(),
                 fontsize=13, fontweight='bold')

    ax = axes[0]
    if len(clicks['minute']) > 0:
        minutes = clicks['minute'] - clicks['minute'].min()
        ax.plot(np.bincount(minutes), lw=0.7)
    ax.set_xlabel('Minute')
    ax.set_ylabel('Clicks / min')
    ax.set_title('Click rate')

    ax = axes[1]
    species, counts = np.unique(clicks['species'], return_counts=True)
    labels = [s or 'unclassified' for s in species]
    ax.bar(labels, counts, color='C1')
    ax.set_ylabel('Clicks')
    ax.set_title('Species')

    ax = axes[2]
    if env is not None:
        ax.plot(env['minute'], env['degC'], lw=0.7, color='C3')
        ax.set_ylabel('Temperature (°C)', color='C3')
        ax2 = ax.twinx()
        ax2.plot(env['minute'], env['bat1v'], lw=0.7, color='C0', label='Battery 1')
        ax2.plot(env['minute'], env['bat2v'], lw=0.7, color='C2', label='Battery 2')
        ax2.set_ylabel('Battery (10 mV)')
        ax2.legend(loc='upper right', fontsize=8)
    ax.set_xlabel('Minute')
    ax.set_title('Environment')

    if outpath:
        fig.savefig(outpath, dpi=150, bbox_inches='tight')
        print(f"Plot saved: {outpath}")
    else:
        plt.show()
    plt.close(fig)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]

    do_plot = '--plot' in argv
    full = '--full' in argv
    args = [a for a in argv if not a.startswith('--')]

    if len(args) < 1:
        print("Usage: pod-read <file.CP1|CP3|FP1|FP3> [--full] [--plot] [--verbose]")
        print("       Read a C-POD / F-POD file and print a summary.")
        print("       --full     keep the raw click columns")
        print("       --plot     generate a diagnostic plot")
        print("       --verbose  debug logging")
        return 1

    if '--verbose' in argv:
        logging.basicConfig(level=logging.DEBUG,
                            format='%(asctime)s %(name)s %(levelname)s %(message)s')

    filepath = args[0]
    try:
        print(f"Parsing: {filepath}")
        print(f"Size: {os.path.getsize(filepath) / 1e6:.1f} MB")
        print()
        parsed = read_pod(filepath, simplify=not full)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print_summary(parsed)

    if do_plot:
        plot_pod(parsed, outpath=f"{filepath}.png")
    return 0


if __name__ == '__main__':
    sys.exit(main())
