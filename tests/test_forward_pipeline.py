# test_forward_pipeline.py
import warnings
import pytest
import torch
import forward_pipeline
from forward_pipeline import ForwardPipeline, forward_operation
from conv_kernels import conv_forward_valid, relu_, average_pool, fully_forward, argmax
from inference_config import InferenceConfig
from model_weights import ModelWeights
from tensor_shape import NetworkDims
from simple_cnn import SimpleCNN
from errors import BufferAllocationError, ShapeError

BATCH = 12

@pytest.fixture
def weights():
    torch.manual_seed(0)
    return ModelWeights.from_module(SimpleCNN())

@pytest.fixture
def x():
    torch.manual_seed(1)
    return torch.rand(BATCH, 28, 28, 1)

@pytest.fixture
def config():
    return InferenceConfig(batch_size=BATCH, verbose=False)

def scores_by_hand(x, weights):
    """The fc2 scores, chaining the kernels directly."""
    n = x.shape[0]
    a = torch.zeros(n, 24, 24, 32)
    relu_(conv_forward_valid(x, weights.conv1, a))
    b = torch.zeros(n, 12, 12, 32)
    average_pool(a, 2, b)
    c = torch.zeros(n, 8, 8, 64)
    relu_(conv_forward_valid(b, weights.conv2, c))
    d = torch.zeros(n, 4, 4, 64)
    average_pool(c, 2, d)
    e = torch.zeros(n, 128)
    relu_(fully_forward(d.view(n, 1024), weights.fc1, e))
    f = torch.zeros(n, 10)
    return fully_forward(e, weights.fc2, f)

def test_labels(weights, x, config):
    labels = ForwardPipeline(weights, config)(x)
    assert labels.shape == (BATCH,), f"Expected {BATCH} labels, got shape {tuple(labels.shape)}"
    assert labels.dtype == torch.int32, f"Labels should be int32, got {labels.dtype}"
    assert torch.all((labels >= 0) & (labels < 10)), "Labels should be digits."
    assert torch.equal(labels, argmax(scores_by_hand(x, weights))), "Pipeline labels differ from chaining the kernels by hand."

def test_matches_torch_reference(weights, x):
    # the kernels compute the same network as the stock torch layers
    reference = SimpleCNN.from_weights(weights)
    with torch.no_grad():
        expected = reference(x)
    assert torch.allclose(scores_by_hand(x, weights), expected, atol=1e-4, rtol=1e-4), "Scores differ from the torch reference model."

def test_deterministic(weights, x, config):
    pipeline = ForwardPipeline(weights, config)
    first = pipeline(x)
    second = pipeline(x)
    assert torch.equal(first, second), "Two runs on the same input gave different labels."
    assert torch.equal(first, ForwardPipeline(weights, config)(x.clone())), "A fresh pipeline gave different labels."

def test_input_is_read_only(weights, x, config):
    original = x.clone()
    ForwardPipeline(weights, config)(x)
    assert torch.equal(x, original), "The pipeline modified its input."

@pytest.mark.parametrize("chunk_size", [1, 5, BATCH])
def test_chunking_does_not_change_labels(weights, x, config, chunk_size):
    expected = ForwardPipeline(weights, config)(x)
    chunked = InferenceConfig(batch_size=BATCH, chunk_size=chunk_size, verbose=False)
    assert torch.equal(ForwardPipeline(weights, chunked)(x), expected), f"Chunks of {chunk_size} changed the labels."

def test_forward_operation(weights, x, config):
    assert torch.equal(forward_operation(x, weights), ForwardPipeline(weights, config)(x))
    assert torch.equal(forward_operation(x, weights, config), ForwardPipeline(weights, config)(x))

def test_input_validation(weights, x, config):
    pipeline = ForwardPipeline(weights, config)
    with pytest.raises(ShapeError):
        pipeline(x[:BATCH - 1])
    with pytest.raises(ShapeError):
        pipeline(x.double())
    with pytest.raises(ShapeError):
        pipeline(torch.rand(BATCH, 28, 28, 2)[..., :1])
    with pytest.raises(ShapeError):
        pipeline(torch.rand(BATCH, 1, 28, 28))
    with pytest.raises(TypeError):
        pipeline(x.numpy())

def test_constructor_validation(weights, config):
    with pytest.raises(TypeError):
        ForwardPipeline(weights.as_dict(), config)
    with pytest.raises(TypeError):
        ForwardPipeline(weights, {'batch_size': BATCH})

def test_inconsistent_pool_size(weights):
    # pool size 3: 24 -> 8 -> 4 -> 1, so fc1 would get 64 features instead of 1024
    with pytest.raises(ShapeError):
        ForwardPipeline(weights, InferenceConfig(batch_size=BATCH, pool_size=3, verbose=False))

def test_allocation_failure(weights, x, config, monkeypatch):
    pipeline = ForwardPipeline(weights, config)

    def out_of_memory(*args, **kwargs):
        raise RuntimeError("DefaultCPUAllocator: can't allocate memory")

    monkeypatch.setattr(forward_pipeline.torch, 'zeros', out_of_memory)
    with pytest.raises(BufferAllocationError) as excinfo:
        pipeline(x)
    assert isinstance(excinfo.value.__cause__, RuntimeError), "The allocator error should be chained."

def test_default_config(weights):
    pipeline = ForwardPipeline(weights)
    assert pipeline.config.batch_size == 10000
    assert pipeline.shapes['conv1'] == (10000, 24, 24, 32)

def test_truncation_warned_once():
    # 29 -> 25 -> pool drops a row and a column -> 12 -> 8 -> 4, fc1 still gets 1024 features
    torch.manual_seed(0)
    weights = ModelWeights.from_module(SimpleCNN(), dims=NetworkDims(rows=29, cols=29))
    with pytest.warns(UserWarning, match="does not divide"):
        pipeline = ForwardPipeline(weights, InferenceConfig(batch_size=6, chunk_size=2, verbose=False))

    x = torch.rand(6, 29, 29, 1)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        labels = pipeline(x)
    assert not [w for w in caught if issubclass(w.category, UserWarning)], "Chunks should not repeat the truncation warning."
    assert labels.shape == (6,)
    assert torch.equal(labels, pipeline.forward_chunk(x)), "Chunking should not change the labels."
