"""
test_activations_losses.py
~~~~~~~~~~~~~~~~~~~~~~~~~~~

Unit tests for activation functions, loss functions and optimizer names.
"""

import numpy as np
import pytest

from patternnet.activations import Activation
from patternnet.exceptions import ConfigurationError
from patternnet.losses import EPSILON, Loss
from patternnet.optimizers import Optimizer


@pytest.mark.unit
class TestActivation:
    """Forward values and derivatives of each activation."""

    def test_from_name_accepts_aliases(self):
        assert Activation.from_name('ReLU') is Activation.RELU
        assert Activation.from_name('leaky-relu') is Activation.LEAKY_RELU
        assert Activation.from_name(Activation.TANH) is Activation.TANH

    @pytest.mark.parametrize('name', ['swish', '', None, 3])
    def test_from_name_rejects_unknown(self, name):
        with pytest.raises(ConfigurationError):
            Activation.from_name(name)

    def test_relu(self):
        z = np.array([-2.0, 0.0, 3.0])
        assert np.array_equal(Activation.RELU.apply(z), [0.0, 0.0, 3.0])
        assert np.array_equal(Activation.RELU.derivative(z), [0.0, 0.0, 1.0])

    def test_leaky_relu(self):
        z = np.array([-2.0, 4.0])
        assert np.allclose(Activation.LEAKY_RELU.apply(z), [-0.02, 4.0])
        assert np.allclose(Activation.LEAKY_RELU.derivative(z), [0.01, 1.0])

    def test_sigmoid_is_stable_for_extreme_inputs(self):
        out = Activation.SIGMOID.apply(np.array([-1000.0, 0.0, 1000.0]))
        assert np.all(np.isfinite(out))
        assert out[0] == pytest.approx(0.0, abs=1e-12)
        assert out[1] == pytest.approx(0.5)
        assert out[2] == pytest.approx(1.0)

    def test_sigmoid_derivative_peaks_at_zero(self):
        assert Activation.SIGMOID.derivative(np.array([0.0]))[0] == pytest.approx(0.25)

    def test_tanh_derivative(self):
        z = np.array([0.0, 1.0])
        assert np.allclose(Activation.TANH.derivative(z), 1.0 - np.tanh(z) ** 2)

    def test_softmax_sums_to_one_and_is_shift_invariant(self):
        z = np.array([1.0, 2.0, 3.0])
        out = Activation.SOFTMAX.apply(z)
        assert out.sum() == pytest.approx(1.0)
        assert np.allclose(out, Activation.SOFTMAX.apply(z + 1000.0))

    def test_softmax_derivative_is_jacobian_diagonal(self):
        z = np.array([0.5, -1.0, 2.0])
        s = Activation.SOFTMAX.apply(z)
        assert np.allclose(Activation.SOFTMAX.derivative(z), s * (1.0 - s))

    def test_linear_returns_copy(self):
        z = np.array([1.0, -1.0])
        out = Activation.LINEAR.apply(z)
        out[0] = 99.0
        assert z[0] == 1.0
        assert np.array_equal(Activation.LINEAR.derivative(z), [1.0, 1.0])

    @pytest.mark.parametrize('activation', [a for a in Activation if a is not Activation.SOFTMAX])
    def test_derivative_matches_finite_difference(self, activation):
        z = np.array([-1.3, -0.4, 0.7, 1.9])
        h = 1e-6
        numeric = (activation.apply(z + h) - activation.apply(z - h)) / (2 * h)
        assert np.allclose(activation.derivative(z), numeric, atol=1e-5)


@pytest.mark.unit
class TestLoss:
    """Loss values and output-layer gradients."""

    def test_from_name(self):
        assert Loss.from_name('cross-entropy') is Loss.CROSS_ENTROPY
        assert Loss.from_name('MSE') is Loss.MSE
        with pytest.raises(ConfigurationError):
            Loss.from_name('hinge')

    def test_mse(self):
        output = np.array([1.0, 2.0])
        target = np.array([0.0, 0.0])
        assert Loss.MSE.value_of(output, target) == pytest.approx(2.5)
        assert np.allclose(Loss.MSE.gradient(output, target), [2.0, 4.0])

    def test_cross_entropy(self):
        output = np.array([0.7, 0.2, 0.1])
        target = np.array([1.0, 0.0, 0.0])
        assert Loss.CROSS_ENTROPY.value_of(output, target) == pytest.approx(-np.log(0.7))
        assert np.allclose(Loss.CROSS_ENTROPY.gradient(output, target), [-0.3, 0.2, 0.1])

    def test_cross_entropy_clips_zero_probability(self):
        value = Loss.CROSS_ENTROPY.value_of(np.array([0.0, 1.0]), np.array([1.0, 0.0]))
        assert np.isfinite(value)
        assert value == pytest.approx(-np.log(EPSILON))

    def test_binary_cross_entropy(self):
        output = np.array([0.8, 0.4])
        target = np.array([1.0, 0.0])
        expected = -np.mean([np.log(0.8), np.log(0.6)])
        assert Loss.BINARY_CROSS_ENTROPY.value_of(output, target) == pytest.approx(expected)

    def test_binary_cross_entropy_gradient_is_finite_at_saturation(self):
        grad = Loss.BINARY_CROSS_ENTROPY.gradient(np.array([1.0, 0.0]), np.array([0.0, 1.0]))
        assert np.all(np.isfinite(grad))


@pytest.mark.unit
class TestOptimizerNames:

    def test_from_name(self):
        assert Optimizer.from_name('Adam') is Optimizer.ADAM
        assert Optimizer.from_name('rmsprop') is Optimizer.RMSPROP
        with pytest.raises(ConfigurationError):
            Optimizer.from_name('adagrad')
