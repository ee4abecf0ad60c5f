# test_model_weights.py
import pytest
import numpy as np
import torch
from types import SimpleNamespace
import mnist_data
from mnist_data import load_testdata, save_testdata, load_mnist
from model_weights import ModelWeights, as_float32
from simple_cnn import SimpleCNN
from errors import DataFormatError, ShapeError

@pytest.fixture
def weights():
    torch.manual_seed(0)
    return ModelWeights.from_module(SimpleCNN())

def assert_same_weights(a, b):
    for name, tensor in a.as_dict().items():
        assert torch.equal(tensor, getattr(b, name)), f"Weight '{name}' differs."

def test_shapes(weights):
    expected = {'conv1': (5, 5, 1, 32), 'conv2': (5, 5, 32, 64), 'fc1': (1024, 128), 'fc2': (128, 10)}
    for name, shape in expected.items():
        tensor = getattr(weights, name)
        assert tensor.shape == shape, f"'{name}' has shape {tuple(tensor.shape)}, expected {shape}"
        assert tensor.dtype == torch.float32
        assert tensor.is_contiguous()

def test_validation(weights):
    arrays = weights.as_dict()
    with pytest.raises(ShapeError):
        ModelWeights(**{**arrays, 'fc1': torch.zeros(1000, 128)})
    with pytest.raises(ShapeError):
        ModelWeights(**{**arrays, 'fc2': torch.zeros(128, 10, dtype=torch.float64)})
    with pytest.raises(ShapeError):
        ModelWeights(**{**arrays, 'fc2': torch.zeros(10, 128).t()})
    with pytest.raises(TypeError):
        ModelWeights(**{**arrays, 'conv1': np.zeros((5, 5, 1, 32), dtype=np.float32)})

def test_frozen(weights):
    with pytest.raises(AttributeError):
        weights.fc1 = torch.zeros(1024, 128)

def test_module_round_trip(weights):
    # weights -> torch layouts -> weights
    assert_same_weights(weights, ModelWeights.from_module(SimpleCNN.from_weights(weights)))
    with pytest.raises(TypeError):
        ModelWeights.from_module(weights)

@pytest.mark.parametrize("suffix", [".npz", ".pt"])
def test_save_and_load(weights, tmp_path, suffix):
    path = tmp_path / f"model{suffix}"
    weights.save(path)
    assert_same_weights(weights, ModelWeights.load(path))

def test_load_errors(weights, tmp_path):
    with pytest.raises(FileNotFoundError):
        ModelWeights.load(tmp_path / "missing.npz")

    with pytest.raises(DataFormatError):
        weights.save(tmp_path / "model.txt")

    incomplete = tmp_path / "incomplete.npz"
    np.savez(incomplete, conv1=weights.conv1.numpy())
    with pytest.raises(DataFormatError, match="missing"):
        ModelWeights.load(incomplete)

    wrong_shape = tmp_path / "wrong_shape.npz"
    np.savez(wrong_shape, **{**{k: v.numpy() for k, v in weights.as_dict().items()}, 'fc2': np.zeros((128, 9), dtype=np.float32)})
    with pytest.raises(DataFormatError) as excinfo:
        ModelWeights.load(wrong_shape)
    assert isinstance(excinfo.value.__cause__, ShapeError), "The shape error should be chained."

    not_a_dict = tmp_path / "tensor.pt"
    torch.save(torch.zeros(3), not_a_dict)
    with pytest.raises(DataFormatError):
        ModelWeights.load(not_a_dict)

def test_as_float32():
    converted = as_float32(np.arange(6, dtype=np.float64).reshape(2, 3)[:, ::2])
    assert converted.dtype == torch.float32 and converted.is_contiguous()
    assert converted.tolist() == [[0., 2.], [3., 5.]]
    with pytest.raises(TypeError):
        as_float32([1., 2.])

@pytest.fixture
def testdata():
    torch.manual_seed(2)
    x = torch.rand(6, 28, 28, 1)
    y = torch.nn.functional.one_hot(torch.arange(6) % 10, 10).float()
    return x, y

@pytest.mark.parametrize("suffix", [".npz", ".pt"])
def test_testdata_round_trip(testdata, tmp_path, suffix):
    path = tmp_path / f"test{suffix}"
    save_testdata(path, *testdata)
    x, y = load_testdata(path, batch_size=4)
    assert x.shape == (4, 28, 28, 1) and y.shape == (4, 10), "load_testdata should keep the first batch_size samples."
    assert torch.equal(x, testdata[0][:4])
    assert torch.equal(y, testdata[1][:4])

def test_testdata_errors(testdata, tmp_path):
    path = tmp_path / "test.npz"
    save_testdata(path, *testdata)
    with pytest.raises(DataFormatError):
        load_testdata(path, batch_size=7)

    only_x = tmp_path / "only_x.npz"
    np.savez(only_x, x=testdata[0].numpy())
    with pytest.raises(DataFormatError, match="missing"):
        load_testdata(only_x, batch_size=2)

    wrong_layout = tmp_path / "nchw.npz"
    np.savez(wrong_layout, x=testdata[0].permute(0, 3, 1, 2).numpy(), y=testdata[1].numpy())
    with pytest.raises(DataFormatError):
        load_testdata(wrong_layout, batch_size=2)

def test_load_mnist(monkeypatch):
    # stand-in for torchvision's MNIST, so the test does not download anything
    data = torch.randint(0, 256, (5, 28, 28), dtype=torch.uint8)
    targets = torch.tensor([7, 2, 1, 0, 4])
    monkeypatch.setattr(mnist_data.datasets, 'MNIST', lambda **kwargs: SimpleNamespace(data=data, targets=targets))

    x, y = load_mnist('./data', batch_size=3)
    assert x.shape == (3, 28, 28, 1) and x.dtype == torch.float32
    assert torch.allclose(x[..., 0], data[:3].float() / 255.)
    assert y.shape == (3, 10)
    assert y.argmax(dim=1).tolist() == [7, 2, 1], "Reference scores should be one-hot targets."

    normalized, _ = load_mnist('./data', batch_size=3, normalize=True)
    assert torch.allclose(normalized, (x - mnist_data.MNIST_MEAN) / mnist_data.MNIST_STD)

    with pytest.raises(DataFormatError):
        load_mnist('./data', batch_size=6)
