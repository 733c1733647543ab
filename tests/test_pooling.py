import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import kerasgraph  # noqa: E402
from kerasgraph import GlobalPooling, OutputType, PoolingType, masked_pool, masks, pool  # noqa: E402


POOLING_TYPES = [PoolingType.SUM, PoolingType.AVG, PoolingType.MAX, PoolingType.PNORM]


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
@pytest.mark.parametrize("shape", [(3, 4, 5), (2, 3, 5, 4), (2, 2, 3, 4, 2)])
def test_all_ones_mask_matches_unmasked(pooling_type, shape):
    torch.manual_seed(0)
    x = torch.randn(*shape, dtype=torch.float64)
    mask = torch.ones(shape[0], *shape[2:], dtype=torch.float64)
    torch.testing.assert_close(masked_pool(x, mask, pooling_type), pool(x, pooling_type))
    torch.testing.assert_close(masked_pool(x, None, pooling_type), pool(x, pooling_type))


def test_avg_divides_by_selected_count():
    torch.manual_seed(1)
    x = torch.randn(2, 3, 6, dtype=torch.float64)
    mask = torch.tensor([[1, 0, 1, 0, 0, 1], [0, 1, 1, 1, 1, 0]], dtype=torch.float64)
    out = masked_pool(x, mask, "avg")
    for b in range(2):
        idx = mask[b].nonzero().squeeze(1)
        torch.testing.assert_close(out[b], x[b][:, idx].mean(dim=-1))


def test_trailing_masked_step_matches_valid_prefix():
    values = torch.tensor([[[0.5, -1.0, 2.0, 4.0, 100.0]]], dtype=torch.float64)
    mask = torch.tensor([[1.0, 1.0, 1.0, 1.0, 0.0]], dtype=torch.float64)
    out = masked_pool(values, mask, PoolingType.AVG)
    expected = torch.tensor([[(0.5 - 1.0 + 2.0 + 4.0) / 4]], dtype=torch.float64)
    torch.testing.assert_close(out, expected)
    torch.testing.assert_close(out, pool(values[:, :, :4], PoolingType.AVG))


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
def test_sequence_mask_matches_per_example_slices(pooling_type):
    torch.manual_seed(2)
    x = torch.rand(3, 5, 5, dtype=torch.float64) - 0.5
    lengths = [5, 4, 3]
    mask = masks.sequence_mask(lengths).to(torch.float64)
    out = masked_pool(x, mask, pooling_type)
    for i, length in enumerate(lengths):
        expected = pool(x[i : i + 1, :, :length], pooling_type)
        torch.testing.assert_close(out[i : i + 1], expected, msg=f"example {i}")


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
def test_width_mask_matches_per_example_slices(pooling_type):
    torch.manual_seed(3)
    minibatch, depth, height, width = 3, 4, 3, 6
    x = torch.rand(minibatch, depth, height, width, dtype=torch.float64)
    mask = torch.tensor(
        [[1, 1, 1, 1, 1, 1], [1, 1, 1, 1, 1, 0], [1, 1, 1, 1, 0, 0]], dtype=torch.float64
    ).reshape(minibatch, 1, 1, width)
    x = x * mask
    out = masked_pool(x, mask, pooling_type)
    for i in range(minibatch):
        expected = pool(x[i : i + 1, :, :, : width - i], pooling_type)
        torch.testing.assert_close(out[i : i + 1], expected, msg=f"example {i}")


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
def test_height_mask_matches_per_example_slices(pooling_type):
    torch.manual_seed(4)
    minibatch, depth, height, width = 3, 4, 5, 4
    x = torch.rand(minibatch, depth, height, width, dtype=torch.float64)
    mask = torch.tensor(
        [[1, 1, 1, 1, 1], [1, 1, 1, 1, 0], [1, 1, 1, 0, 0]], dtype=torch.float64
    ).reshape(minibatch, 1, height, 1)
    out = masked_pool(x, mask, pooling_type)
    for i in range(minibatch):
        expected = pool(x[i : i + 1, :, : height - i, :], pooling_type)
        torch.testing.assert_close(out[i : i + 1], expected, msg=f"example {i}")


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
def test_height_and_width_masked_independently(pooling_type):
    torch.manual_seed(5)
    minibatch, depth, height, width = 2, 4, 5, 4
    x = torch.rand(minibatch, depth, height, width, dtype=torch.float64)
    x[1, :, 3:, :] = 0
    x[1, :, :, 2:] = 0
    mask = masks.spatial_mask([5, 3], [4, 2], height=height, width=width).to(torch.float64)
    assert mask.shape == (minibatch, height, width)

    out = masked_pool(x, mask, pooling_type)
    torch.testing.assert_close(out[0:1], pool(x[0:1], pooling_type))
    torch.testing.assert_close(out[1:2], pool(x[1:2, :, 0:3, 0:2], pooling_type))

    # Same result with a full-rank [B, 1, H, W] mask.
    torch.testing.assert_close(masked_pool(x, mask.unsqueeze(1), pooling_type), out)


def test_max_ignores_masked_positions_even_when_they_are_larger():
    x = torch.full((1, 2, 4), -3.0)
    x[0, :, 1] = -1.0
    x[0, :, 3] = 0.0
    mask = torch.tensor([[1.0, 1.0, 1.0, 0.0]])
    out = masked_pool(x, mask, PoolingType.MAX)
    torch.testing.assert_close(out, torch.tensor([[-1.0, -1.0]]))


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
def test_non_finite_padding_does_not_leak(pooling_type):
    torch.manual_seed(6)
    x = torch.rand(2, 3, 4, dtype=torch.float64)
    x[0, :, 3] = float("nan")
    x[1, :, 2:] = float("inf")
    mask = masks.sequence_mask([3, 2], max_len=4).to(torch.float64)
    out = masked_pool(x, mask, pooling_type)
    assert torch.isfinite(out).all()
    torch.testing.assert_close(out[0:1], pool(x[0:1, :, :3], pooling_type))
    torch.testing.assert_close(out[1:2], pool(x[1:2, :, :2], pooling_type))


def test_empty_example_does_not_produce_nan_in_other_rows():
    x = torch.ones(2, 3, 4)
    mask = torch.tensor([[0.0, 0.0, 0.0, 0.0], [1.0, 1.0, 0.0, 0.0]])
    out = masked_pool(x, mask, PoolingType.AVG)
    assert not torch.isnan(out).any()
    torch.testing.assert_close(out[0], torch.zeros(3))
    torch.testing.assert_close(out[1], torch.ones(3))


@pytest.mark.parametrize("pooling_type", POOLING_TYPES)
def test_channels_last_layout(pooling_type):
    torch.manual_seed(7)
    x = torch.randn(2, 3, 5, 4, dtype=torch.float64)
    mask = masks.spatial_mask([5, 2], [3, 4]).to(torch.float64)
    expected = masked_pool(x, mask, pooling_type)
    x_last = x.movedim(1, -1)
    torch.testing.assert_close(
        masked_pool(x_last, mask, pooling_type, data_format="channels_last"), expected
    )
    torch.testing.assert_close(
        masked_pool(x_last, mask.unsqueeze(-1), pooling_type, data_format="channels_last"), expected
    )


def test_weighted_mask_scales_sum_and_pnorm():
    x = torch.tensor([[[1.0, 2.0, 3.0]]])
    mask = torch.tensor([[1.0, 0.5, 0.0]])
    torch.testing.assert_close(masked_pool(x, mask, "sum"), torch.tensor([[2.0]]))
    torch.testing.assert_close(masked_pool(x, mask, "avg"), torch.tensor([[1.0]]))
    torch.testing.assert_close(
        masked_pool(x, mask, "pnorm", pnorm=2), torch.tensor([[3.0 ** 0.5]])
    )


def test_integer_max_uses_dtype_minimum():
    x = torch.tensor([[[-7, -2, 5]]], dtype=torch.int64)
    mask = torch.tensor([[1, 1, 0]])
    out = masked_pool(x, mask, PoolingType.MAX)
    assert out.dtype == torch.int64
    assert out.tolist() == [[-2]]


def test_fractional_mask_on_integer_activation():
    x = torch.tensor([[[1, 2, 3]]], dtype=torch.int64)
    mask = torch.tensor([[0.5, 1.0, 1.0]])
    avg = masked_pool(x, mask, PoolingType.AVG)
    assert avg.is_floating_point()
    torch.testing.assert_close(avg, torch.tensor([[5.5 / 3]]))
    torch.testing.assert_close(masked_pool(x, mask, PoolingType.SUM), torch.tensor([[5.5]]))
    assert masked_pool(x, mask, PoolingType.MAX).tolist() == [[3]]
    with pytest.raises(ValueError):
        masked_pool(x, torch.tensor([[-0.5, 1.0, 1.0]]), PoolingType.AVG)


def test_global_pooling_module_and_gradients():
    torch.manual_seed(8)
    layer = GlobalPooling("sum", collapse_dimensions=False)
    x = torch.randn(2, 3, 4, requires_grad=True)
    mask = masks.sequence_mask([4, 2])
    out = layer(x, mask)
    assert out.shape == (2, 3, 1)
    out.sum().backward()
    expected_grad = mask.unsqueeze(1).expand(2, 3, 4)
    torch.testing.assert_close(x.grad, expected_grad)

    last = GlobalPooling(PoolingType.AVG, data_format="channels_last", collapse_dimensions=False)
    assert last(torch.randn(2, 5, 6, 3)).shape == (2, 1, 1, 3)
    assert "AVG" in repr(last)


def test_global_pooling_output_type():
    rnn = OutputType("rnn", (None, 7))
    assert GlobalPooling().output_type(rnn) == OutputType("ff", (7,))
    cnn = OutputType("cnn", (3, 8, 8), channels_last=False)
    assert GlobalPooling(collapse_dimensions=False).output_type(cnn) == OutputType("cnn", (3, 1, 1), False)
    with pytest.raises(ValueError):
        GlobalPooling().output_type(OutputType("ff", (4,)))


def test_pooling_type_parse_and_argument_errors():
    assert PoolingType.parse("Average") is PoolingType.AVG
    assert PoolingType.parse(" MAX ") is PoolingType.MAX
    assert PoolingType.parse(PoolingType.PNORM) is PoolingType.PNORM
    with pytest.raises(kerasgraph.ConfigurationError):
        PoolingType.parse("median")

    x = torch.randn(2, 3, 4)
    with pytest.raises(ValueError):
        masked_pool(x, torch.ones(2, 5), "sum")
    with pytest.raises(ValueError):
        masked_pool(x, torch.ones(2), "sum")
    with pytest.raises(ValueError):
        masked_pool(x, -torch.ones(2, 4), "sum")
    with pytest.raises(ValueError):
        masked_pool(torch.randn(2, 3), None, "sum")
    with pytest.raises(ValueError):
        masked_pool(x, None, "pnorm", pnorm=0)
    with pytest.raises(ValueError):
        GlobalPooling(data_format="nchw")
