import numpy as np
from sklearn.datasets import make_circles, make_moons

from nn import Vol


def make_spiral(n_samples, noise, rng, n_classes=3):
    per_class = n_samples // n_classes
    data = []
    labels = []
    for c in range(n_classes):
        r = np.linspace(0.05, 1, per_class)
        t = np.linspace(c * 4, (c + 1) * 4, per_class) + rng.standard_normal(per_class) * noise
        data.append(np.stack([r * np.sin(t), r * np.cos(t)], 1))
        labels.append(np.full(per_class, c))
    return np.concatenate(data), np.concatenate(labels)


def read_toy_dataset(name, n_samples=300, noise=0.1, seed=0):
    """2-D classification points and integer labels, centred on zero."""
    if name == 'moons':
        data, labels = make_moons(n_samples, noise=noise, random_state=seed)
    elif name == 'circles':
        data, labels = make_circles(n_samples, noise=noise, factor=0.5, random_state=seed)
    elif name == 'spiral':
        data, labels = make_spiral(n_samples, noise, np.random.default_rng(seed))
    else:
        raise ValueError("unknown dataset '%s'" % name)
    data = data - data.mean(0)
    return data, labels.astype(np.int64)


def to_vols(data):
    return [Vol.from_values(row) for row in data]

