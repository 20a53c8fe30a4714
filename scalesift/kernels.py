from __future__ import annotations

import math
import warnings
from typing import Tuple

import numba
import numpy as np
from numba.core.errors import NumbaPerformanceWarning

warnings.filterwarnings("ignore", category=NumbaPerformanceWarning)

TWO_PI = 2.0 * math.pi


def gaussian_symm_kernel(sigma: float) -> Tuple[np.ndarray, int]:
    """Right half (centre included) of a normalized sampled Gaussian."""
    radius = int(math.ceil(4.0 * float(sigma)))
    g = np.empty(radius + 1, dtype=np.float32)
    g[0] = np.float32(1.0)

    if sigma > 0.0:
        sig32 = np.float32(sigma)
        sum32 = np.float32(1.0)
        for i in range(1, radius + 1):
            t32 = np.float32(-0.5) * np.float32(i) * np.float32(i) / sig32 / sig32
            val32 = np.float32(math.exp(float(t32)))
            g[i] = val32
            sum32 = np.float32(sum32 + np.float32(2.0) * val32)
        g /= sum32
    elif radius > 0:
        g[1:] = np.float32(0.0)

    return g, radius


@numba.njit(cache=True)
def mirror(i, n):
    period = n << 1
    m = ((i % period) + period) % period
    return min(m, period - 1 - m)


@numba.njit(cache=True, fastmath=True)
def gauss_h(src, dst, g, radius):
    h, w = src.shape
    for y in range(h):
        for x in range(w):
            acc = src[y, x] * g[0]
            for k in range(1, radius + 1):
                acc += g[k] * (src[y, mirror(x - k, w)] + src[y, mirror(x + k, w)])
            dst[y, x] = acc


@numba.njit(cache=True, fastmath=True)
def gauss_v(src, dst, g, radius):
    h, w = src.shape
    for y in range(h):
        for x in range(w):
            acc = src[y, x] * g[0]
            for k in range(1, radius + 1):
                acc += g[k] * (src[mirror(y - k, h), x] + src[mirror(y + k, h), x])
            dst[y, x] = acc


def gaussian_blur(img_in: np.ndarray, gauss_kernel: np.ndarray, radius: int) -> np.ndarray:
    img_out = np.empty_like(img_in, dtype=np.float32)
    if radius == 0:
        img_out[...] = img_in
        return img_out
    scratch = np.empty_like(img_out)
    gauss_v(img_in, scratch, gauss_kernel, radius)
    gauss_h(scratch, img_out, gauss_kernel, radius)
    return img_out


@numba.njit(cache=True, fastmath=True)
def oversample_bilinear(src, dst, delta_min):
    hi, wi = src.shape
    ho, wo = dst.shape
    for i_out in range(ho):
        x = i_out * delta_min
        im = int(x)
        ip = im + 1
        if ip >= hi:
            ip = 2 * hi - 1 - ip
        if im >= hi:
            im = 2 * hi - 1 - im
        fx = x - math.floor(x)
        for j_out in range(wo):
            y = j_out * delta_min
            jm = int(y)
            jp = jm + 1
            if jp >= wi:
                jp = 2 * wi - 1 - jp
            if jm >= wi:
                jm = 2 * wi - 1 - jm
            fy = y - math.floor(y)
            dst[i_out, j_out] = fx * (fy * src[ip, jp] + (1.0 - fy) * src[ip, jm]) + (
                1.0 - fx
            ) * (fy * src[im, jp] + (1.0 - fy) * src[im, jm])


@numba.njit(cache=True)
def downsample(src, dst):
    h, w = dst.shape
    for y in range(h):
        for x in range(w):
            dst[y, x] = src[y * 2, x * 2]


@numba.njit(cache=True, fastmath=True)
def gradient_polar(img, mag, ori):
    h, w = img.shape
    for y in range(h):
        ym = max(y - 1, 0)
        yp = min(y + 1, h - 1)
        fy = 0.5 if 0 < y < h - 1 else 1.0
        for x in range(w):
            xm = max(x - 1, 0)
            xp = min(x + 1, w - 1)
            fx = 0.5 if 0 < x < w - 1 else 1.0
            gx = fx * (img[y, xp] - img[y, xm])
            gy = fy * (img[yp, x] - img[ym, x])
            mag[y, x] = math.sqrt(gx * gx + gy * gy)
            a = math.atan2(gy, gx)
            if a < 0.0:
                a += TWO_PI
            if a >= TWO_PI:
                a -= TWO_PI
            ori[y, x] = a


@numba.njit(cache=True)
def find_extrema(
    dog_oct, octave, int_buf, float_buf, counter, sigma_min, n_spo, delta
):
    """Scan the interior of every inner DoG level for strict 26-neighbour extrema.

    ``counter[0]`` is the number of recorded candidates, ``counter[1]`` the
    number dropped because the buffers were full.
    """
    ns, h, w = dog_oct.shape
    cap = int_buf.shape[0]
    for s in range(1, ns - 1):
        for y in range(1, h - 1):
            for x in range(1, w - 1):
                v = dog_oct[s, y, x]
                is_max = True
                is_min = True
                for ds in range(-1, 2):
                    for dy in range(-1, 2):
                        for dx in range(-1, 2):
                            if ds == 0 and dy == 0 and dx == 0:
                                continue
                            n = dog_oct[s + ds, y + dy, x + dx]
                            if n >= v:
                                is_max = False
                            if n <= v:
                                is_min = False
                            if not is_max and not is_min:
                                break
                        if not is_max and not is_min:
                            break
                    if not is_max and not is_min:
                        break
                if not is_max and not is_min:
                    continue
                idx = counter[0]
                if idx >= cap:
                    counter[1] += 1
                    continue
                counter[0] = idx + 1
                int_buf[idx, 0] = octave
                int_buf[idx, 1] = s
                int_buf[idx, 2] = y
                int_buf[idx, 3] = x
                float_buf[idx, 0] = y * delta
                float_buf[idx, 1] = x * delta
                float_buf[idx, 2] = sigma_min * 2.0 ** (octave + s / n_spo)
                float_buf[idx, 3] = v


@numba.njit(cache=True)
def quadratic_fit(dog_oct, s, y, x):
    """Second order Taylor fit of the DoG at an integer sample.

    Axis order is (scale, row, column). Returns ``(ok, g0, g1, g2, o0, o1, o2)``
    with the gradient ``g`` and the offset ``o = -H^-1 g``; ``ok`` is False
    when the Hessian is singular or the offset is not finite.
    """
    c = float(dog_oct[s, y, x])
    g0 = 0.5 * (float(dog_oct[s + 1, y, x]) - float(dog_oct[s - 1, y, x]))
    g1 = 0.5 * (float(dog_oct[s, y + 1, x]) - float(dog_oct[s, y - 1, x]))
    g2 = 0.5 * (float(dog_oct[s, y, x + 1]) - float(dog_oct[s, y, x - 1]))

    h00 = float(dog_oct[s + 1, y, x]) + float(dog_oct[s - 1, y, x]) - 2.0 * c
    h11 = float(dog_oct[s, y + 1, x]) + float(dog_oct[s, y - 1, x]) - 2.0 * c
    h22 = float(dog_oct[s, y, x + 1]) + float(dog_oct[s, y, x - 1]) - 2.0 * c
    h01 = 0.25 * (
        float(dog_oct[s + 1, y + 1, x])
        - float(dog_oct[s + 1, y - 1, x])
        - float(dog_oct[s - 1, y + 1, x])
        + float(dog_oct[s - 1, y - 1, x])
    )
    h02 = 0.25 * (
        float(dog_oct[s + 1, y, x + 1])
        - float(dog_oct[s + 1, y, x - 1])
        - float(dog_oct[s - 1, y, x + 1])
        + float(dog_oct[s - 1, y, x - 1])
    )
    h12 = 0.25 * (
        float(dog_oct[s, y + 1, x + 1])
        - float(dog_oct[s, y + 1, x - 1])
        - float(dog_oct[s, y - 1, x + 1])
        + float(dog_oct[s, y - 1, x - 1])
    )

    a00 = h11 * h22 - h12 * h12
    a01 = h02 * h12 - h01 * h22
    a02 = h01 * h12 - h02 * h11
    det = h00 * a00 + h01 * a01 + h02 * a02
    if det == 0.0 or not math.isfinite(det):
        return False, g0, g1, g2, 0.0, 0.0, 0.0
    a11 = h00 * h22 - h02 * h02
    a12 = h01 * h02 - h00 * h12
    a22 = h00 * h11 - h01 * h01
    k = 1.0 / det
    o0 = -k * (a00 * g0 + a01 * g1 + a02 * g2)
    o1 = -k * (a01 * g0 + a11 * g1 + a12 * g2)
    o2 = -k * (a02 * g0 + a12 * g1 + a22 * g2)
    ok = math.isfinite(o0) and math.isfinite(o1) and math.isfinite(o2)
    return ok, g0, g1, g2, o0, o1, o2


@numba.njit(cache=True)
def spatial_hessian(dog_oct, s, y, x):
    im = dog_oct[s]
    c = float(im[y, x])
    h_yy = float(im[y - 1, x]) + float(im[y + 1, x]) - 2.0 * c
    h_xx = float(im[y, x + 1]) + float(im[y, x - 1]) - 2.0 * c
    h_xy = 0.25 * (
        (float(im[y + 1, x + 1]) - float(im[y + 1, x - 1]))
        - (float(im[y - 1, x + 1]) - float(im[y - 1, x - 1]))
    )
    return h_yy, h_xx, h_xy


@numba.njit(cache=True, fastmath=True)
def orientation_histogram(mag, ori, y0, x0, sigma, lambda_ori, hist, moments):
    """Accumulate Gaussian weighted gradient votes around (y0, x0).

    Coordinates and ``sigma`` are in pixels of the octave ``mag``/``ori``
    belong to. ``moments`` receives the windowed second-moment matrix of the
    gradients as (xx, yy, xy).
    """
    h, w = mag.shape
    nbins = hist.shape[0]
    for i in range(nbins):
        hist[i] = 0.0
    moments[0] = 0.0
    moments[1] = 0.0
    moments[2] = 0.0
    big_r = 3.0 * lambda_ori * sigma
    g_sigma = lambda_ori * sigma
    inv2s2 = 1.0 / (2.0 * g_sigma * g_sigma)
    bin_scale = nbins / TWO_PI

    i_min = 0 if (y0 - big_r + 0.5) < 0.0 else int(y0 - big_r + 0.5)
    j_min = 0 if (x0 - big_r + 0.5) < 0.0 else int(x0 - big_r + 0.5)
    i_max = h - 1 if (y0 + big_r + 0.5) > (h - 1) else int(y0 + big_r + 0.5)
    j_max = w - 1 if (x0 + big_r + 0.5) > (w - 1) else int(x0 + big_r + 0.5)

    for yy in range(i_min, i_max + 1):
        dyf = yy - y0
        for xx in range(j_min, j_max + 1):
            m = mag[yy, xx]
            if m == 0.0:
                continue
            dxf = xx - x0
            wgt = m * math.exp(-(dxf * dxf + dyf * dyf) * inv2s2)
            b = int(ori[yy, xx] * bin_scale) % nbins
            hist[b] += wgt
            a = ori[yy, xx]
            c = math.cos(a)
            sn = math.sin(a)
            moments[0] += wgt * m * c * c
            moments[1] += wgt * m * sn * sn
            moments[2] += wgt * m * c * sn


@numba.njit(cache=True)
def smooth_circular(hist, iterations):
    n = hist.shape[0]
    tmp = np.empty_like(hist)
    for _ in range(iterations):
        for i in range(n):
            tmp[i] = hist[i]
        for i in range(n):
            hist[i] = (tmp[(i - 1) % n] + tmp[i] + tmp[(i + 1) % n]) / 3.0


@numba.njit(cache=True, fastmath=True)
def descriptor_histogram(
    mag, ori, y0, x0, sigma, theta, lambda_desc, nhist, nori, hist
):
    """Trilinear gradient histograms of the patch in the keypoint frame.

    ``hist`` has ``nhist * nhist * nori`` cells laid out row-major as
    (row cell, column cell, orientation bin). Returns False, leaving ``hist``
    untouched, when the rotated patch does not fit inside the octave.
    """
    h, w = mag.shape
    radius_f = lambda_desc * sigma
    big_r = (1.0 + 1.0 / nhist) * radius_f
    r_patch = math.sqrt(2.0) * big_r
    if y0 - r_patch < 0.0 or y0 + r_patch > h - 1 or x0 - r_patch < 0.0 or x0 + r_patch > w - 1:
        return False

    for i in range(hist.shape[0]):
        hist[i] = 0.0
    c = math.cos(theta)
    sn = math.sin(theta)
    inv2s2 = 1.0 / (2.0 * radius_f * radius_f)
    inv_cell = nhist / (2.0 * radius_f)
    half_bins = (nhist - 1.0) * 0.5
    bin_scale = nori / TWO_PI

    i_min = int(y0 - r_patch + 0.5)
    j_min = int(x0 - r_patch + 0.5)
    i_max = int(y0 + r_patch + 0.5)
    j_max = int(x0 + r_patch + 0.5)
    if i_max > h - 1:
        i_max = h - 1
    if j_max > w - 1:
        j_max = w - 1

    for yy in range(i_min, i_max + 1):
        dy0 = yy - y0
        for xx in range(j_min, j_max + 1):
            dx0 = xx - x0
            dx = dx0 * c + dy0 * sn
            dy = -dx0 * sn + dy0 * c
            if abs(dx) >= big_r or abs(dy) >= big_r:
                continue
            m = mag[yy, xx]
            if m == 0.0:
                continue
            a = ori[yy, xx] - theta
            if a < 0.0:
                a += TWO_PI
            if a >= TWO_PI:
                a -= TWO_PI
            ob = a * bin_scale
            o_lo = int(ob)
            d_o = ob - o_lo

            fr = dy * inv_cell + half_bins
            fc = dx * inv_cell + half_bins
            r_lo = int(math.floor(fr))
            c_lo = int(math.floor(fc))
            d_r = fr - r_lo
            d_c = fc - c_lo

            wbase = m * math.exp(-(dx * dx + dy * dy) * inv2s2)
            for ir in range(2):
                rr = r_lo + ir
                if rr < 0 or rr >= nhist:
                    continue
                wr = (1.0 - d_r) if ir == 0 else d_r
                for ic in range(2):
                    cc = c_lo + ic
                    if cc < 0 or cc >= nhist:
                        continue
                    wc = (1.0 - d_c) if ic == 0 else d_c
                    for io in range(2):
                        oo = (o_lo + io) % nori
                        wo = (1.0 - d_o) if io == 0 else d_o
                        hist[(rr * nhist + cc) * nori + oo] += wbase * wr * wc * wo
    return True
