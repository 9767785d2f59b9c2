"""
Mandelbulb projection renderer
- Voxel sampling: grid -> rotated cube of half-width `bailout`
- Iteration: power-n spherical update, c = the voxel's own start point
- Projection: front-to-back scan along z, first bounded voxel wins
- Output: 8-bit grayscale PNG

Only the front half of the cube is scanned (z < side // 2).
"""

import argparse
import math
import os
import sys
import tempfile
import time
from dataclasses import dataclass

import numpy as np
from numba import njit, prange
from PIL import Image

# ----------------------------------------------------
# PARAMETERS
# ----------------------------------------------------
SIDE = 960
POWER = 8
MAX_ITER = 7

# Rotation angles (radians)
ANGLE_XY = 0.0
ANGLE_XZ = 0.0
ANGLE_YZ = 0.0

OUTPUT_FILE = "output.png"

# Pixel value for columns with no bounded voxel
OUTSIDE = 255


class ConfigurationError(ValueError):
    """Rejected render parameters or a mismatched pixel buffer."""


# ----------------------------------------------------
# CONFIG
# ----------------------------------------------------
@dataclass(frozen=True)
class RenderConfig:
    side: int = SIDE
    power: int = POWER
    angle_xy: float = ANGLE_XY
    angle_xz: float = ANGLE_XZ
    angle_yz: float = ANGLE_YZ
    max_iter: int = MAX_ITER
    parallel: bool = True

    def __post_init__(self):
        if self.power < 2:
            raise ConfigurationError(f"power must be >= 2, got {self.power}")
        if self.side < 2:
            raise ConfigurationError(f"side must be >= 2, got {self.side}")
        if self.max_iter < 0:
            raise ConfigurationError(f"max_iter must be >= 0, got {self.max_iter}")
        for name in ("angle_xy", "angle_xz", "angle_yz"):
            if not math.isfinite(getattr(self, name)):
                raise ConfigurationError(f"{name} must be finite")

    @property
    def bailout(self):
        return 2.0 ** (1.0 / (self.power - 1))

    @property
    def bailout_sq(self):
        b = self.bailout
        return b * b

    @property
    def half_side(self):
        return self.side // 2

    @property
    def angles(self):
        return (float(self.angle_xy), float(self.angle_xz), float(self.angle_yz))


# ----------------------------------------------------
# NUMBA VECTOR MATH
# ----------------------------------------------------
@njit
def to_polar(x, y, z):
    """Return (r, phi, theta). phi is atan(y/x), not atan2."""
    r = math.sqrt(x * x + y * y + z * z)
    phi = 0.0
    if x != 0.0:
        phi = math.atan(y / x)
    theta = 0.0
    if r != 0.0:
        theta = math.acos(z / r)
    return r, phi, theta


@njit
def magnitude_squared(point):
    return point[0] * point[0] + point[1] * point[1] + point[2] * point[2]


# ----------------------------------------------------
# NUMBA SAMPLER
# ----------------------------------------------------
@njit
def sample_coords(x, y, z, angles, side, bailout):
    """
    Map voxel (x, y, z) into the cube [-bailout, bailout]^3 and rotate it.

    The three rotations are applied one after another on the updated
    coordinates: (x, y) by angles[0], then (x, z) by angles[1], then
    (y, z) by angles[2].
    """
    half = float(side // 2)
    xf = (x - half) / half * bailout
    yf = (y - half) / half * bailout
    zf = (z - half) / half * bailout

    a_xy, a_xz, a_yz = angles

    c, s = math.cos(a_xy), math.sin(a_xy)
    xf, yf = xf * c - yf * s, xf * s + yf * c

    c, s = math.cos(a_xz), math.sin(a_xz)
    xf, zf = xf * c - zf * s, xf * s + zf * c

    c, s = math.cos(a_yz), math.sin(a_yz)
    yf, zf = yf * c - zf * s, yf * s + zf * c

    return xf, yf, zf


@njit
def sample_voxel(x, y, z, angles, side, bailout):
    """sample_coords as a (3,) float64 point."""
    xf, yf, zf = sample_coords(x, y, z, angles, side, bailout)
    point = np.empty(3, dtype=np.float64)
    point[0] = xf
    point[1] = yf
    point[2] = zf
    return point


# ----------------------------------------------------
# NUMBA ITERATION ENGINE
# ----------------------------------------------------
@njit
def iterate_coords(x, y, z, cx, cy, cz, power):
    n = float(power)
    r, phi, theta = to_polar(x, y, z)
    rn = math.pow(r, n)
    sin_t = math.sin(n * theta)
    return (rn * sin_t * math.cos(n * phi) + cx,
            rn * sin_t * math.sin(n * phi) + cy,
            rn * math.cos(n * theta) + cz)


@njit
def iterate_point(point, c, power):
    """One power-n step, in place: point <- point^n + c."""
    x, y, z = iterate_coords(point[0], point[1], point[2],
                             c[0], c[1], c[2], power)
    point[0] = x
    point[1] = y
    point[2] = z


@njit
def evaluate_voxel(x, y, z, side, power, angles, max_iter, bailout):
    """Squared magnitude of voxel (x, y, z) after max_iter iterations."""
    cx, cy, cz = sample_coords(x, y, z, angles, side, bailout)
    px, py, pz = cx, cy, cz
    for _ in range(max_iter):
        px, py, pz = iterate_coords(px, py, pz, cx, cy, cz, power)
    return px * px + py * py + pz * pz


@njit
def scan_column(x, y, side, power, angles, max_iter, bailout):
    """
    Front-to-back scan of column (x, y) over z in [0, side // 2).

    Returns (sqr, depth) for the first voxel with sqr <= bailout^2, or
    (nan, -1) if there is none. NaN never passes the bound test.
    """
    b2 = bailout * bailout
    for z in range(side // 2):
        sqr = evaluate_voxel(x, y, z, side, power, angles, max_iter, bailout)
        if sqr <= b2:
            return sqr, z
    return np.nan, -1


# ----------------------------------------------------
# NUMBA RASTERIZER
# ----------------------------------------------------
@njit
def intensity(sqr, depth, bailout_sq):
    if depth < 0:
        return OUTSIDE
    # truncates toward zero like an integer cast; not round()
    level = sqr / bailout_sq * 255.0
    if level <= 0.0:
        return 0
    if level >= 255.0:
        return 255
    return int(level)


def _render_rows(pixels, side, power, angles, max_iter, bailout):
    b2 = bailout * bailout
    for y in prange(side):
        for x in range(side):
            sqr, depth = scan_column(x, y, side, power, angles, max_iter, bailout)
            pixels[y, x] = intensity(sqr, depth, b2)


render_rows_serial = njit(_render_rows)
render_rows_parallel = njit(parallel=True)(_render_rows)


def column_value(x, y, config):
    """Squared magnitude of the first bounded voxel in column (x, y), or None."""
    sqr, depth = scan_column(x, y, config.side, config.power, config.angles,
                             config.max_iter, config.bailout)
    if depth < 0:
        return None
    return sqr


def render_into(pixels, config):
    """Fill `pixels` (side*side uint8 values, row-major) for `config`."""
    side = config.side
    if pixels.dtype != np.uint8:
        raise ConfigurationError(f"pixel buffer must be uint8, got {pixels.dtype}")
    if pixels.size != side * side:
        raise ConfigurationError(
            f"pixel buffer holds {pixels.size} values, expected {side * side}"
        )
    view = pixels.reshape(side, side)
    kernel = render_rows_parallel if config.parallel else render_rows_serial
    kernel(view, side, config.power, config.angles, config.max_iter, config.bailout)
    if not np.shares_memory(view, pixels):
        pixels[...] = view.reshape(pixels.shape)
    return pixels


def render(config):
    pixels = np.empty((config.side, config.side), dtype=np.uint8)
    return render_into(pixels, config)


# ----------------------------------------------------
# PNG OUTPUT
# ----------------------------------------------------
def _current_umask():
    mask = os.umask(0)
    os.umask(mask)
    return mask


def write_image(path, pixels):
    """
    Save a 2D uint8 buffer as a grayscale PNG.

    The image goes to a temporary file next to `path` and is moved into
    place once Pillow has finished; on failure the temporary file is
    removed and the error propagates.
    """
    if pixels.ndim != 2 or pixels.dtype != np.uint8:
        raise ConfigurationError(
            f"expected a 2D uint8 buffer, got {pixels.ndim}D {pixels.dtype}"
        )
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(suffix=".png", dir=directory)
    try:
        with os.fdopen(fd, "wb") as fh:
            Image.fromarray(np.ascontiguousarray(pixels)).save(fh, format="PNG")
        # mkstemp creates 0600; give the image the mode a plain open() would
        os.chmod(tmp_path, 0o666 & ~_current_umask())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


# ----------------------------------------------------
# MAIN
# ----------------------------------------------------
def parse_args(argv=None):
    ap = argparse.ArgumentParser(
        description="Render a grayscale projection of a Mandelbulb-style fractal"
    )
    ap.add_argument("--power", type=int, default=POWER, help="Fractal power (>= 2)")
    ap.add_argument("--angle-xy", type=float, default=ANGLE_XY, help="Rotation in the xy plane (radians)")
    ap.add_argument("--angle-xz", type=float, default=ANGLE_XZ, help="Rotation in the xz plane (radians)")
    ap.add_argument("--angle-yz", type=float, default=ANGLE_YZ, help="Rotation in the yz plane (radians)")
    ap.add_argument("--side", type=int, default=SIDE, help="Image side in pixels")
    ap.add_argument("--max-iter", type=int, default=MAX_ITER, help="Iterations per voxel")
    ap.add_argument("--output", default=OUTPUT_FILE, help="Output PNG path")
    ap.add_argument("--serial", action="store_true", help="Disable parallel rows")
    ap.add_argument("--quiet", action="store_true", help="Only report errors")
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    def info(msg):
        if not args.quiet:
            print(f"[INFO] {msg}")

    try:
        config = RenderConfig(
            side=args.side,
            power=args.power,
            angle_xy=args.angle_xy,
            angle_xz=args.angle_xz,
            angle_yz=args.angle_yz,
            max_iter=args.max_iter,
            parallel=not args.serial,
        )
    except ConfigurationError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    info(f"Power {config.power}, bailout {config.bailout:.6f}, "
         f"{config.side}x{config.side}, {config.max_iter} iterations")

    t0 = time.perf_counter()
    info("Warming up Numba...")
    render(RenderConfig(side=2, power=config.power, max_iter=0,
                        parallel=config.parallel))
    t1 = time.perf_counter()
    info(f"Warm-up: {(t1 - t0) * 1000:.1f}ms")

    pixels = render(config)
    t2 = time.perf_counter()
    info(f"Render: {(t2 - t1) * 1000:.1f}ms, "
         f"non-white pixels: {int(np.count_nonzero(pixels != OUTSIDE)):,}")

    try:
        write_image(args.output, pixels)
    except OSError as exc:
        print(f"[ERROR] Could not write {args.output}: {exc}", file=sys.stderr)
        return 1
    t3 = time.perf_counter()
    info(f"Saved {args.output} ({(t3 - t2) * 1000:.1f}ms)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
