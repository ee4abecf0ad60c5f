#simple_cnn.py
"""
Module for the MNIST CNN expressed with stock torch layers.
Same topology as the naive forward pipeline, so it serves two purposes:
    - a reference to check the hand-written kernels against
    - a source of weights: ModelWeights.from_module(SimpleCNN()) converts its parameters into the pipeline's layouts
Takes and returns channel-last tensors, like the pipeline.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

class SimpleCNN(nn.Module):
    """
    A convolutional neural network for classifying MNIST digits.
    No biases anywhere, average pooling, and the feature map is flattened in (H, W, C) order.
    """
    def __init__(self):
        super(SimpleCNN, self).__init__()
        # First convolutional layer: 1 input channel, 32 output channels, kernel size 5. 28x28 -> 24x24
        self.conv1 = nn.Conv2d(1, 32, kernel_size=5, bias=False)
        # Second convolutional layer: 32 input channels, 64 output channels, kernel size 5. 12x12 -> 8x8
        self.conv2 = nn.Conv2d(32, 64, kernel_size=5, bias=False)
        # 64 channels of a 4x4 image after the second pooling
        self.fc1 = nn.Linear(1024, 128, bias=False)
        self.fc2 = nn.Linear(128, 10, bias=False)

    @classmethod
    def from_weights(cls, weights) -> 'SimpleCNN':
        """Build a SimpleCNN holding the given ModelWeights, transposed back into torch layouts."""
        model = cls()
        with torch.no_grad():
            model.conv1.weight.copy_(weights.conv1.permute(3, 2, 0, 1))
            model.conv2.weight.copy_(weights.conv2.permute(3, 2, 0, 1))
            model.fc1.weight.copy_(weights.fc1.t())
            model.fc2.weight.copy_(weights.fc2.t())
        return model.eval()

    def forward(self, x):
        # (N, H, W, C) -> (N, C, H, W) for the torch layers
        x = x.permute(0, 3, 1, 2)
        # Apply the first convolution, followed by ReLU activation function and average pooling
        x = F.avg_pool2d(F.relu(self.conv1(x)), 2)
        # Apply the second convolution, followed by ReLU activation function and average pooling
        x = F.avg_pool2d(F.relu(self.conv2(x)), 2)
        # Flatten channel last, the order fc1 expects
        x = x.permute(0, 2, 3, 1).flatten(1)
        x = F.relu(self.fc1(x))
        return self.fc2(x)
