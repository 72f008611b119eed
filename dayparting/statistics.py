"""
Statistical primitives for hour-of-day significance testing

Student-t p-values are computed from the regularized incomplete beta
function (Lentz continued fraction).
"""

import math
from typing import NamedTuple, Sequence

from shared.logger import get_logger

logger = get_logger(__name__)

# Continued fraction limits
MAX_ITERATIONS = 200
EPSILON = 1e-10
TINY = 1e-30

# Above this many degrees of freedom the t distribution is treated as normal
NORMAL_APPROX_DF = 100

_LANCZOS_COEFFICIENTS = (
    76.18009172947146,
    -86.50532032941677,
    24.01409824083091,
    -1.231739572450155,
    0.1208650973866179e-2,
    -0.5395239384953e-5,
)


class TTestResult(NamedTuple):
    t_stat: float
    p_value: float
    degrees_of_freedom: int


class MeanStd(NamedTuple):
    mean: float
    std: float


def normal_cdf(x: float) -> float:
    """Standard normal CDF (Abramowitz & Stegun 7.1.26, error < 1.5e-7)"""
    a1 = 0.254829592
    a2 = -0.284496736
    a3 = 1.421413741
    a4 = -1.453152027
    a5 = 1.061405429
    p = 0.3275911

    sign = -1.0 if x < 0 else 1.0
    z = abs(x) / math.sqrt(2.0)

    t = 1.0 / (1.0 + p * z)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-z * z)

    return 0.5 * (1.0 + sign * y)


def log_gamma(x: float) -> float:
    """ln Γ(x) for x > 0 (Lanczos, 6 terms)"""
    y = x
    tmp = x + 5.5
    tmp -= (x + 0.5) * math.log(tmp)
    ser = 1.000000000190015

    for coefficient in _LANCZOS_COEFFICIENTS:
        y += 1.0
        ser += coefficient / y

    return -tmp + math.log(2.5066282746310005 * ser / x)


def _floor_magnitude(value: float) -> float:
    return TINY if abs(value) < TINY else value


def _beta_continued_fraction(x: float, a: float, b: float, max_iterations: int, epsilon: float) -> float:
    qab = a + b
    qap = a + 1.0
    qam = a - 1.0

    c = 1.0
    d = 1.0 / _floor_magnitude(1.0 - qab * x / qap)
    h = d

    for m in range(1, max_iterations + 1):
        m2 = 2 * m

        # Even step
        aa = m * (b - m) * x / ((qam + m2) * (a + m2))
        d = 1.0 / _floor_magnitude(1.0 + aa * d)
        c = _floor_magnitude(1.0 + aa / c)
        h *= d * c

        # Odd step
        aa = -(a + m) * (qab + m) * x / ((a + m2) * (qap + m2))
        d = 1.0 / _floor_magnitude(1.0 + aa * d)
        c = _floor_magnitude(1.0 + aa / c)
        delta = d * c
        h *= delta

        if abs(delta - 1.0) < epsilon:
            return h

    logger.debug(f"Incomplete beta did not converge (x={x}, a={a}, b={b}); using best effort")
    return h


def incomplete_beta(
    x: float,
    a: float,
    b: float,
    max_iterations: int = MAX_ITERATIONS,
    epsilon: float = EPSILON
) -> float:
    """Regularized incomplete beta I_x(a, b) for a, b > 0"""
    if x <= 0.0:
        return 0.0
    if x >= 1.0:
        return 1.0

    # The fraction converges quickly only below this point
    if x > (a + 1.0) / (a + b + 2.0):
        return 1.0 - incomplete_beta(1.0 - x, b, a, max_iterations, epsilon)

    ln_beta = log_gamma(a) + log_gamma(b) - log_gamma(a + b)
    front = math.exp(math.log(x) * a + math.log(1.0 - x) * b - ln_beta) / a

    return front * _beta_continued_fraction(x, a, b, max_iterations, epsilon)


def t_cdf(t: float, df: float) -> float:
    """CDF of Student's t with `df` degrees of freedom"""
    if df > NORMAL_APPROX_DF:
        return normal_cdf(t)

    x = df / (df + t * t)
    beta = incomplete_beta(x, df / 2.0, 0.5)

    if t >= 0:
        return 1.0 - 0.5 * beta
    return 0.5 * beta


def standard_error(std: float, n: int) -> float:
    if n <= 1:
        return math.inf
    return std / math.sqrt(n)


def one_sample_t_test(
    sample_mean: float,
    population_mean: float,
    sample_std: float,
    sample_size: int
) -> TTestResult:
    """
    Two-sided one-sample t-test.

    n <= 1 or zero spread cannot reject the null hypothesis, so it
    returns t=0, p=1, df=0 instead of dividing by zero.
    """
    if sample_size <= 1 or sample_std <= 0:
        return TTestResult(0.0, 1.0, 0)

    se = standard_error(sample_std, sample_size)
    t_stat = (sample_mean - population_mean) / se
    df = sample_size - 1

    p_value = 2.0 * (1.0 - t_cdf(abs(t_stat), df))
    p_value = min(1.0, max(0.0, p_value))

    return TTestResult(t_stat, p_value, df)


def calculate_mean_and_std(values: Sequence[float]) -> MeanStd:
    """Mean and sample (n-1) standard deviation"""
    n = len(values)
    if n == 0:
        return MeanStd(0.0, 0.0)

    mean = math.fsum(values) / n
    if n == 1:
        return MeanStd(mean, 0.0)

    variance = math.fsum((v - mean) ** 2 for v in values) / (n - 1)
    return MeanStd(mean, math.sqrt(variance))
