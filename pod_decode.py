"""
C-POD / F-POD Click File Decoder
================================
Binary format decoder for the click-detector loggers made by Chelonia Ltd:
C-POD (.CP1, .CP3) and F-POD (.FP1, .FP3) files.

The .xP1 files hold the raw clicks logged by the pod.  The .xP3 files are
written by the KERNO train classifier and additionally carry click-train,
species and quality annotations.

FILE STRUCTURE
--------------
A fixed-size header block followed by fixed-size data blocks:

    Type   Header   Block   Discriminant
    ----   ------   -----   ------------
    CP1    360 B    10 B    last byte  (254 = minute marker, else click)
    CP3    720 B    40 B    last byte  (254 = minute marker, else click)
    FP1    1024 B   16 B    first byte (see below)
    FP3    1024 B   16 B    first byte (see below)

F-POD block kinds, by first byte:

    Byte     Kind           Description
    ----     ----           -----------
    < 184    Click          One detected click
    249      Train          Train / species info for the NEXT click
    250      Wave           7 (IPI, amplitude) samples for the NEXT click
    254      Minute         Minute marker with temperature and batteries
    other    -              Ignored

All multi-byte integers are big-endian.  C-POD data ends with two
consecutive blocks that are (almost) entirely 0xFF; F-POD data simply
runs to the end of the file.

CLICK TIMING
------------
Bytes 0-2 of a click block are a 24-bit counter of 5 us ticks since the
last minute marker.  The minute index starts at -1, i.e. clicks before the
first marker belong to minute -1.
"""

import io
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FILE_TYPES = ('CP1', 'CP3', 'FP1', 'FP3')

# (header block size, data block size) per file type
BUF_SIZES = {
    'CP1': (360, 10),
    'CP3': (720, 40),
    'FP1': (1024, 16),
    'FP3': (1024, 16),
}

FAMILY_CPOD = 'CPOD'
FAMILY_FPOD = 'FPOD'

# Block kinds
BLOCK_CLICK   = 'click'
BLOCK_TRAIN   = 'train'
BLOCK_WAV     = 'wav'
BLOCK_MINUTE  = 'minute'
BLOCK_UNKNOWN = 'unknown'

# F-POD first-byte discriminants
FPOD_CLICK_LIMIT = 184
FPOD_TRAIN       = 249
FPOD_WAV         = 250
MINUTE_MARKER    = 254

TERMINATOR_BYTE = 0xFF
TERMINATOR_TOLERANCE = 5  # non-0xFF bytes allowed in a terminator block

# Click counter ticks are 5 us
TICKS_PER_MS = 200.0

WAV_SAMPLES_PER_CHUNK = 7

# Species groups by KERNO code.  C-POD uses codes 0-7 in pairs.
CPOD_SPECIES = ('NBHF', 'NBHF', 'OtherCet', 'OtherCet',
                'Unclassed', 'Unclassed', 'Sonar', 'Sonar')
FPOD_SPECIES = ('NBHF', 'OtherCet', 'Unclassed', 'Sonar')

# Longest label, used as the numpy string width of the species column
SPECIES_WIDTH = max(len(s) for s in CPOD_SPECIES + FPOD_SPECIES)

CLICK_COLUMNS = (
    'minute', 'microsec', 'click_no', 'train_id', 'species',
    'quality_level', 'echo', 'ncyc', 'pkat', 'clk_ipi_range',
    'ipi_pre_max', 'ipi_at_max', 'khz', 'amp_at_max', 'amp_reversals',
    'duration', 'has_wav',
)


# ---------------------------------------------------------------------------
# Format resolution and field helpers
# ---------------------------------------------------------------------------

def get_filetype(filepath):
    """Return the upper-case file extension without the dot ('' if none)."""
    return Path(filepath).suffix[1:].upper()


def get_buf_sizes(filetype):
    """Return (header block size, data block size) for a file type.

    Raises
    ------
    ValueError
        If `filetype` is not one of CP1, CP3, FP1, FP3.
    """
    try:
        return BUF_SIZES[filetype.upper()]
    except KeyError:
        raise ValueError(f"Unknown file type: {filetype!r}") from None


def get_family(filetype):
    """Return 'CPOD' or 'FPOD' for a file type."""
    get_buf_sizes(filetype)
    return FAMILY_CPOD if filetype.upper().startswith('CP') else FAMILY_FPOD


def construct_int(buf, offset, size, signed=False):
    """Build a big-endian integer from `size` bytes of `buf` at `offset`.

    Bytes are shifted in most-significant first.  A field that would run
    past the end of the buffer yields 0.  With `signed`, the value is read
    as two's complement of `size` bytes.
    """
    if offset < 0 or offset + size > len(buf):
        return 0
    res = 0
    for i in range(size):
        res = (res << 8) | buf[offset + i]
    if signed and size > 0 and res & (1 << (8 * size - 1)):
        res -= 1 << (8 * size)
    return res


def parse_string(buf, offset, length):
    """Copy a fixed-width text field verbatim.

    Latin-1 maps each byte to exactly one character, so padding and any
    non-ASCII bytes survive unchanged.
    """
    return bytes(buf[offset:offset + length]).decode('latin-1')


def species_from_code(code, family):
    """Map a KERNO species code to a species group label.

    Parameters
    ----------
    code : int
        Species code from a click (C-POD, 0-7) or train block (F-POD, 0-3).
    family : str
        'CPOD', 'FPOD' or a file type such as 'CP3' / 'FP3'.

    Returns
    -------
    str
        'NBHF', 'OtherCet', 'Unclassed', 'Sonar', or '' for codes outside
        the family's table.
    """
    family = family.upper()
    if family.startswith('CP'):
        table = CPOD_SPECIES
    elif family.startswith('FP'):
        table = FPOD_SPECIES
    else:
        return ''
    if 0 <= code < len(table):
        return table[code]
    return ''


def is_terminator_block(buf):
    """True if at most TERMINATOR_TOLERANCE bytes of the block differ from 0xFF."""
    return buf.count(TERMINATOR_BYTE) >= len(buf) - TERMINATOR_TOLERANCE


def click_microsec(buf):
    """Microseconds since the minute marker from the 24-bit tick counter."""
    return int(construct_int(buf, 0, 3) / TICKS_PER_MS * 1000.0)


# ---------------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PodHeader:
    """Decoded header block.

    Text fields are the raw fixed-width byte ranges, including padding.
    Fields that a file type does not carry are None.
    """

    filetype: str
    pod_id: Union[str, int]
    first_logged_min: int
    last_logged_min: int
    water_depth: int
    deployment_depth: int
    lat_text: str
    lon_text: str
    location_text: str
    notes_text: str
    gmt_text: Optional[str] = None
    pic_ver: Optional[int] = None
    fpga_ver: Optional[int] = None
    extended_amps: bool = False
    prior_clicks: Optional[int] = None
    filename: Optional[str] = None

    @property
    def family(self):
        return get_family(self.filetype)

    def as_dict(self):
        """Header fields as a plain dict, without the fields that are None."""
        return {k: v for k, v in asdict(self).items() if v is not None}


def decode_cpod_header(buf, filetype, filename=None):
    """Decode a C-POD header block (CP1: 360 bytes, CP3: 720 bytes).

    Fields
    ------
    off  13: str[8]     Latitude text
    off  21: str[8]     Longitude text
    off  29: uint16 BE  Deployment depth
    off  31: uint16 BE  Water depth
    off  33: str[31]    Location text
    off 128: uint32 BE  Clicks in the source CP1 file (CP3 only)
    off 164: str[4]     Pod ID
    off 211: str[50]    User notes
    off 256: int32 BE   First logged minute
    off 260: int32 BE   Last logged minute
    """
    filetype = filetype.upper()
    prior = construct_int(buf, 128, 4) if filetype == 'CP3' else None
    return PodHeader(
        filetype=filetype,
        pod_id=parse_string(buf, 164, 4),
        first_logged_min=construct_int(buf, 256, 4, signed=True),
        last_logged_min=construct_int(buf, 260, 4, signed=True),
        water_depth=construct_int(buf, 31, 2),
        deployment_depth=construct_int(buf, 29, 2),
        lat_text=parse_string(buf, 13, 8),
        lon_text=parse_string(buf, 21, 8),
        location_text=parse_string(buf, 33, 31),
        notes_text=parse_string(buf, 211, 50),
        prior_clicks=prior,
        filename=filename,
    )


def decode_fpod_header(buf, filetype, filename=None):
    """Decode an F-POD header block (1024 bytes).

    Fields
    ------
    off   3: uint8      Pod ID, hundreds
    off   4: uint8      Pod ID, units
    off  37: uint8      PIC (processor) firmware version
    off  39: uint16 BE  FPGA version; non-zero means extended amplitudes
    off 129: uint16 BE  Deployment depth
    off 131: uint16 BE  Water depth
    off 133: str[11]    Latitude text
    off 145: str[11]    Longitude text
    off 157: str[30]    Location text
    off 188: str[43]    User notes
    off 231: int64 BE   Clicks in the source FP1 file (FP3 only)
    off 232: str[11]    GMT / timezone text
    off 256: int32 BE   First logged minute
    off 260: int32 BE   Last logged minute
    """
    filetype = filetype.upper()
    fpga_ver = construct_int(buf, 39, 2)
    prior = construct_int(buf, 231, 8, signed=True) if filetype == 'FP3' else None
    return PodHeader(
        filetype=filetype,
        pod_id=100 * buf[3] + buf[4],
        first_logged_min=construct_int(buf, 256, 4, signed=True),
        last_logged_min=construct_int(buf, 260, 4, signed=True),
        water_depth=construct_int(buf, 131, 2),
        deployment_depth=construct_int(buf, 129, 2),
        lat_text=parse_string(buf, 133, 11),
        lon_text=parse_string(buf, 145, 11),
        location_text=parse_string(buf, 157, 30),
        notes_text=parse_string(buf, 188, 43),
        gmt_text=parse_string(buf, 232, 11),
        pic_ver=buf[37],
        fpga_ver=fpga_ver,
        extended_amps=fpga_ver > 0,
        prior_clicks=prior,
        filename=filename,
    )


# ---------------------------------------------------------------------------
# Block classification
# ---------------------------------------------------------------------------

def classify_cpod_block(buf):
    """Return the kind of a C-POD data block (minute marker or click)."""
    if buf[-1] == MINUTE_MARKER:
        return BLOCK_MINUTE
    return BLOCK_CLICK


def classify_fpod_block(buf):
    """Return the kind of an F-POD data block from its first byte."""
    b0 = buf[0]
    if b0 < FPOD_CLICK_LIMIT:
        return BLOCK_CLICK
    if b0 == FPOD_TRAIN:
        return BLOCK_TRAIN
    if b0 == FPOD_WAV:
        return BLOCK_WAV
    if b0 == MINUTE_MARKER:
        return BLOCK_MINUTE
    return BLOCK_UNKNOWN


def fpod_ipi_range(nibble):
    """Decode the 4-bit click IPI range class."""
    if nibble == 15:
        return 65
    if nibble & 0x8:
        return ((nibble & 0x7) + 1) << 3
    return nibble & 0x7


# ---------------------------------------------------------------------------
# Wave data
# ---------------------------------------------------------------------------

class WavAccumulator:
    """Pseudo-wave samples, one series of 7-sample chunks per click.

    Chunks arrive in the reverse of their chronological order, so
    `to_table` emits each click's chunks last-in first, keeping the
    sample order inside every chunk.
    """

    def __init__(self):
        self._series = []  # [(click_no, [(ipi_tuple, spl_tuple), ...]), ...]
        self._click_nos = set()

    def __len__(self):
        return len(self._series)

    def has_series(self, click_no):
        return click_no in self._click_nos

    def open_series(self, click_no):
        self._series.append((click_no, []))
        self._click_nos.add(click_no)

    def add_chunk(self, ipi, spl):
        """Append one chunk to the most recently opened series."""
        if not self._series:
            raise ValueError("No wave series open")
        self._series[-1][1].append((tuple(ipi), tuple(spl)))

    def to_table(self, max_click_no=None):
        """Flatten to a dict of arrays: 'click_no', 'IPI', 'SPL'.

        Series for clicks beyond `max_click_no` are dropped.
        """
        click_no, ipi, spl = [], [], []
        for click, chunks in self._series:
            if max_click_no is not None and click > max_click_no:
                continue
            for chunk_ipi, chunk_spl in reversed(chunks):
                click_no.extend([click] * len(chunk_ipi))
                ipi.extend(chunk_ipi)
                spl.extend(chunk_spl)
        return {
            'click_no': np.array(click_no, dtype=np.int32),
            'IPI':      np.array(ipi, dtype=np.int32),
            'SPL':      np.array(spl, dtype=np.int32),
        }


def read_wav_chunk(buf):
    """Extract the 7 (IPI, amplitude) pairs of an F-POD wave block."""
    ipi, spl = [], []
    for pos in range(2 * (WAV_SAMPLES_PER_CHUNK - 1), -1, -2):
        ipi.append(buf[pos + 1])
        spl.append(buf[pos + 2])
    return ipi, spl


# ---------------------------------------------------------------------------
# Dataset
# ---------------------------------------------------------------------------

def _alloc_clicks(n):
    """Pre-sized click columns for at most `n` clicks."""
    return {
        'minute':        np.zeros(n, dtype=np.int32),
        'microsec':      np.zeros(n, dtype=np.int32),
        'click_no':      np.arange(1, n + 1, dtype=np.int32),
        'train_id':      np.zeros(n, dtype=np.int32),
        'species':       np.full(n, '', dtype=f'<U{SPECIES_WIDTH}'),
        'quality_level': np.zeros(n, dtype=np.int32),
        'echo':          np.zeros(n, dtype=bool),
        'ncyc':          np.zeros(n, dtype=np.int32),
        'pkat':          np.zeros(n, dtype=np.int32),
        'clk_ipi_range': np.zeros(n, dtype=np.int32),
        'ipi_pre_max':   np.zeros(n, dtype=np.int32),
        'ipi_at_max':    np.zeros(n, dtype=np.int32),
        'khz':           np.zeros(n, dtype=np.int32),
        'amp_at_max':    np.zeros(n, dtype=np.int32),
        'amp_reversals': np.zeros(n, dtype=np.int32),
        'duration':      np.full(n, np.nan, dtype=np.float64),
        'has_wav':       np.zeros(n, dtype=bool),
    }


class PodDataset:
    """Decoder output buffers for one file.

    Click columns are allocated for the largest possible click count and
    truncated to the decoded count by `to_dict`.  Train and wave blocks
    describe the click that follows them; their annotations wait in a
    lookahead buffer keyed by click index until that click is decoded.
    """

    def __init__(self, max_clicks, header):
        self.header = header
        self.max_clicks = max_clicks
        self.clicks = _alloc_clicks(max_clicks)
        self.wav = WavAccumulator()
        self.env = {'degC': [], 'bat1v': [], 'bat2v': []}
        self.last_click = -1
        self._pending_train = {}
        self._pending_wav = set()

    def start_click(self, index, minute):
        """Begin click row `index` and attach any annotations waiting for it."""
        self.clicks['minute'][index] = minute
        train = self._pending_train.pop(index, None)
        if train is not None:
            (self.clicks['train_id'][index],
             self.clicks['species'][index],
             self.clicks['quality_level'][index],
             self.clicks['echo'][index]) = train
        if index in self._pending_wav:
            self._pending_wav.discard(index)
            self.clicks['has_wav'][index] = True

    def annotate_train(self, index, train_id, species, quality_level, echo):
        self._pending_train[index] = (train_id, species, quality_level, echo)

    def add_wav_chunk(self, index, ipi, spl):
        """Add a wave chunk for click row `index` (click number index + 1)."""
        if index not in self._pending_wav:
            self._pending_wav.add(index)
            self.wav.open_series(index + 1)
        self.wav.add_chunk(ipi, spl)

    def add_env(self, deg_c, bat1, bat2):
        self.env['degC'].append(deg_c)
        self.env['bat1v'].append(bat1)
        self.env['bat2v'].append(bat2)

    @property
    def n_clicks(self):
        return self.last_click + 1 if self.last_click > -1 else 0

    def to_dict(self):
        """Assemble the decoded tables.

        Returns
        -------
        dict with keys:
            'header' : PodHeader
            'clicks' : dict of arrays, one row per click (CLICK_COLUMNS)
            'env'    : dict of arrays, one row per minute marker (F-POD only)
            'wav'    : dict of arrays 'click_no', 'IPI', 'SPL'
        """
        n = self.n_clicks
        dangling = sum(1 for i in self._pending_train if i >= n)
        dangling += sum(1 for i in self._pending_wav if i >= n)
        if dangling:
            log.debug(f"Dropped {dangling} annotation(s) for clicks never decoded")

        out = {'header': self.header}
        out['clicks'] = {k: self.clicks[k][:n].copy() for k in CLICK_COLUMNS}
        if self.env['degC']:
            n_min = len(self.env['degC'])
            out['env'] = {
                'minute': np.arange(1, n_min + 1, dtype=np.int32),
                'degC':   np.array(self.env['degC'], dtype=np.int32),
                'bat1v':  np.array(self.env['bat1v'], dtype=np.int32),
                'bat2v':  np.array(self.env['bat2v'], dtype=np.int32),
            }
        out['wav'] = self.wav.to_table(max_click_no=n)
        return out


# ---------------------------------------------------------------------------
# Data block decoders
# ---------------------------------------------------------------------------

def decode_cpod_data(fid, filetype, data_buf_size, dat):
    """Decode C-POD data blocks from `fid` into `dat`.

    Click block fields
    ------------------
    off  0-2: uint24 BE  Ticks (5 us) since the minute marker
    off    3: uint8      Number of cycles
    off    5: uint8      Frequency (kHz), also stored as amplitude
    CP3 only:
    off   36: uint8      Species code (bits 3-7), quality level (bits 0-1)
    off   39: uint8      Train ID

    Decoding stops at a short read or at the second consecutive
    terminator block.  The first terminator block decodes as a click; the
    reported count excludes the last decoded click.

    Returns
    -------
    int
        Index of the last reported click (-1 if none).
    """
    cp3 = filetype.upper() == 'CP3'
    current_click = -1
    current_min = -1
    file_ends = 0
    n_blocks = 0
    clicks = dat.clicks

    while True:
        buf = fid.read(data_buf_size)
        if len(buf) < data_buf_size:
            log.debug(f"Short read after {n_blocks} blocks, stopping")
            break
        n_blocks += 1

        if is_terminator_block(buf):
            file_ends += 1
            if file_ends == 2:
                log.debug(f"End-of-data blocks after {n_blocks} blocks")
                break
        else:
            file_ends = 0

        kind = classify_cpod_block(buf)
        if kind == BLOCK_MINUTE:
            current_min += 1
        elif kind == BLOCK_CLICK:
            current_click += 1
            dat.start_click(current_click, current_min)
            clicks['microsec'][current_click] = click_microsec(buf)
            clicks['ncyc'][current_click] = buf[3]
            clicks['khz'][current_click] = buf[5]
            clicks['amp_at_max'][current_click] = buf[5]
            if buf[5] > 0:
                clicks['duration'][current_click] = buf[3] / buf[5]
            if cp3:
                clicks['train_id'][current_click] = buf[39]
                clicks['species'][current_click] = species_from_code(buf[36] >> 3, FAMILY_CPOD)
                clicks['quality_level'][current_click] = buf[36] & 3

    dat.last_click = current_click - 1
    return dat.last_click


def decode_fpod_data(fid, filetype, data_buf_size, dat):
    """Decode F-POD data blocks from `fid` into `dat`.

    Click block fields
    ------------------
    off  0-2: uint24 BE  Ticks (5 us) since the minute marker
    off    3: uint8      Number of cycles
    off    4: uint8      Peak cycle (high nibble), IPI range class (low nibble)
    off    5: uint8      IPI before the peak cycle, minus one
    off    6: uint8      IPI at the peak cycle, minus one
    off   10: uint8      Amplitude at the peak cycle (minimum 2)
    off   13: uint8      Duration high bits (high nibble), reversals (low)
    off   14: uint8      Duration low byte

    Train block (249), for the next click
    -------------------------------------
    off   14: uint8      Quality (bits 0-1), species (bits 2-3), echo (bit 5)
    off   15: uint8      Train ID

    Wave block (250), for the next click
    ------------------------------------
    off 1-14: uint8[14]  7 (IPI, amplitude) pairs, last sample first

    Minute block (254)
    ------------------
    off    7: uint8      Temperature (deg C)
    off 11-13: uint8     Battery voltages (layout depends on PIC version)

    Returns
    -------
    int
        Index of the last decoded click (-1 if none).
    """
    current_click = -1
    current_min = -1
    pic_ver = dat.header.pic_ver or 0
    n_blocks = 0
    clicks = dat.clicks

    while True:
        buf = fid.read(data_buf_size)
        if len(buf) < data_buf_size:
            log.debug(f"Short read after {n_blocks} blocks, stopping")
            break
        n_blocks += 1

        kind = classify_fpod_block(buf)
        if kind == BLOCK_CLICK:
            current_click += 1
            i = current_click
            dat.start_click(i, current_min)
            clicks['microsec'][i] = click_microsec(buf)
            clicks['ncyc'][i] = buf[3]
            clicks['pkat'][i] = (buf[4] & 0xF0) >> 4
            clicks['clk_ipi_range'][i] = fpod_ipi_range(buf[4] & 0xF)
            clicks['ipi_pre_max'][i] = buf[5] + 1
            clicks['ipi_at_max'][i] = buf[6] + 1
            clicks['amp_at_max'][i] = max(2, buf[10])
            clicks['amp_reversals'][i] = buf[13] & 0xF
            clicks['duration'][i] = ((buf[13] & 0xF0) * 16 + buf[14]) // 5

        elif kind == BLOCK_TRAIN:
            dat.annotate_train(
                current_click + 1,
                train_id=buf[15],
                species=species_from_code((buf[14] >> 2) & 3, FAMILY_FPOD),
                quality_level=buf[14] & 3,
                echo=bool(buf[14] & 0x20),
            )

        elif kind == BLOCK_WAV:
            ipi, spl = read_wav_chunk(buf)
            dat.add_wav_chunk(current_click + 1, ipi, spl)

        elif kind == BLOCK_MINUTE:
            current_min += 1
            if pic_ver < 28 and buf[11] == 0 and buf[13]:
                bat1, bat2 = buf[12], buf[13]
            else:
                bat1, bat2 = buf[11], buf[12]
            dat.add_env(buf[7], bat1, bat2)

    dat.last_click = current_click
    return dat.last_click


# ---------------------------------------------------------------------------
# Top-level decoding
# ---------------------------------------------------------------------------

def decode_pod(fid, filetype, file_size, filename=None):
    """Decode a POD file from an open binary file object.

    Parameters
    ----------
    fid : binary file object
        Positioned at the start of the header.
    filetype : str
        One of 'CP1', 'CP3', 'FP1', 'FP3'.
    file_size : int
        Total size in bytes, used to pre-size the click columns.
    filename : str or None
        Stored in the header.

    Returns
    -------
    dict
        See `PodDataset.to_dict`.
    """
    filetype = filetype.upper()
    header_size, data_size = get_buf_sizes(filetype)

    buf = fid.read(header_size)
    if len(buf) < header_size:
        raise ValueError(
            f"Unable to read header: expected {header_size} bytes, got {len(buf)}")

    max_clicks = max(0, (file_size - header_size) // data_size)

    if get_family(filetype) == FAMILY_CPOD:
        header = decode_cpod_header(buf, filetype, filename)
        decoder = decode_cpod_data
    else:
        header = decode_fpod_header(buf, filetype, filename)
        decoder = decode_fpod_data

    dat = PodDataset(max_clicks, header)
    decoder(fid, filetype, data_size, dat)
    log.debug(f"Decoded {dat.n_clicks} clicks, {len(dat.env['degC'])} minutes, "
              f"{len(dat.wav)} wave series from {filename or filetype}")
    return dat.to_dict()


def decode_pod_bytes(data, filetype):
    """Decode a POD file held in memory."""
    return decode_pod(io.BytesIO(data), filetype, len(data))


def read_pod_file(filepath):
    """Decode a .CP1, .CP3, .FP1 or .FP3 file.

    The file type comes from the extension.  An unknown extension raises
    ValueError before the file is opened; an unreadable file raises
    OSError.
    """
    filetype = get_filetype(filepath)
    get_buf_sizes(filetype)
    file_size = os.path.getsize(filepath)
    with open(filepath, 'rb') as f:
        return decode_pod(f, filetype, file_size, filename=str(filepath))
