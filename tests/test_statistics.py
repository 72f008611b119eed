"""
Unit tests for the statistics primitives
"""

import math
import pytest
from dayparting.statistics import (
    normal_cdf,
    log_gamma,
    incomplete_beta,
    t_cdf,
    standard_error,
    one_sample_t_test,
    calculate_mean_and_std,
)


class TestDistributions:
    def test_normal_cdf_known_values(self):
        """Normal CDF matches table values"""
        assert normal_cdf(0) == pytest.approx(0.5, abs=1e-6)
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
        assert normal_cdf(-1.96) == pytest.approx(0.025, abs=1e-4)

    def test_normal_cdf_is_monotonic(self):
        values = [normal_cdf(x / 10) for x in range(-40, 41)]
        assert values == sorted(values)

    def test_log_gamma(self):
        """ln Γ(n) = ln((n-1)!)"""
        assert log_gamma(1) == pytest.approx(0.0, abs=1e-6)
        assert log_gamma(2) == pytest.approx(0.0, abs=1e-6)
        assert log_gamma(5) == pytest.approx(math.log(24), abs=1e-6)
        assert log_gamma(0.5) == pytest.approx(math.log(math.sqrt(math.pi)), abs=1e-6)

    def test_incomplete_beta_boundaries(self):
        assert incomplete_beta(0, 2, 3) == 0.0
        assert incomplete_beta(-0.5, 2, 3) == 0.0
        assert incomplete_beta(1, 2, 3) == 1.0
        assert incomplete_beta(1.5, 2, 3) == 1.0

    def test_incomplete_beta_closed_forms(self):
        """I_x(1, 1) = x, I_x(1, b) = 1 - (1-x)^b, I_0.5(a, a) = 0.5"""
        assert incomplete_beta(0.3, 1, 1) == pytest.approx(0.3, abs=1e-8)
        assert incomplete_beta(0.2, 1, 3) == pytest.approx(1 - 0.8 ** 3, abs=1e-8)
        assert incomplete_beta(0.5, 2, 2) == pytest.approx(0.5, abs=1e-8)
        # Upper half goes through the symmetry relation
        assert incomplete_beta(0.9, 1, 3) == pytest.approx(1 - 0.1 ** 3, abs=1e-8)

    def test_t_cdf_center_and_tails(self):
        assert t_cdf(0, 10) == pytest.approx(0.5)
        assert t_cdf(2.228, 10) == pytest.approx(0.975, abs=1e-3)
        assert t_cdf(-2.228, 10) == pytest.approx(0.025, abs=1e-3)

    def test_t_cdf_large_df_uses_normal(self):
        assert t_cdf(1.96, 500) == pytest.approx(normal_cdf(1.96))


class TestTTest:
    def test_standard_error(self):
        assert standard_error(2.0, 4) == pytest.approx(1.0)
        assert standard_error(1.0, 1) == math.inf
        assert standard_error(1.0, 0) == math.inf

    def test_two_sided_p_value(self):
        """t = 2 with 10 degrees of freedom"""
        result = one_sample_t_test(2.0, 0.0, math.sqrt(11), 11)

        assert result.t_stat == pytest.approx(2.0)
        assert result.degrees_of_freedom == 10
        assert result.p_value == pytest.approx(0.0734, abs=1e-3)

    def test_critical_value_gives_five_percent(self):
        result = one_sample_t_test(2.228, 0.0, math.sqrt(11), 11)
        assert result.p_value == pytest.approx(0.05, abs=1e-3)

    def test_sign_does_not_change_p_value(self):
        above = one_sample_t_test(1.5, 1.0, 1.0, 20)
        below = one_sample_t_test(0.5, 1.0, 1.0, 20)

        assert above.t_stat == pytest.approx(-below.t_stat)
        assert above.p_value == pytest.approx(below.p_value)

    def test_degenerate_inputs(self):
        """Single sample or zero spread cannot reject the null hypothesis"""
        assert tuple(one_sample_t_test(5.0, 1.0, 2.0, 1)) == (0.0, 1.0, 0)
        assert tuple(one_sample_t_test(5.0, 1.0, 2.0, 0)) == (0.0, 1.0, 0)
        assert tuple(one_sample_t_test(5.0, 1.0, 0.0, 50)) == (0.0, 1.0, 0)

    def test_p_value_in_unit_interval(self):
        for mean in (0.0, 0.5, 1.0, 10.0, 1000.0):
            result = one_sample_t_test(mean, 1.0, 0.5, 30)
            assert 0.0 <= result.p_value <= 1.0


class TestMeanAndStd:
    def test_sample_std(self):
        mean, std = calculate_mean_and_std([2, 4, 4, 4, 5, 5, 7, 9])

        assert mean == pytest.approx(5.0)
        assert std == pytest.approx(math.sqrt(32 / 7))

    def test_empty_and_single(self):
        assert tuple(calculate_mean_and_std([])) == (0.0, 0.0)
        assert tuple(calculate_mean_and_std([3.5])) == (3.5, 0.0)
