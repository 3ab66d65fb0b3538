from collections import namedtuple

import numpy as np
from scipy.special import expit, logsumexp


class ConfigError(ValueError):
    """Invalid network or trainer configuration, raised at construction."""


class ShapeError(ValueError):
    """A volume does not have the shape the receiving operation expects."""


class Vol(np.ndarray):
    """
    A 3-D volume of float64 values with a gradient array of the same shape.

    The array shape is (sy, sx, depth) in C order, so the flat index of
    coordinate (x, y, d) is ((y * sx) + x) * depth + d. ``w`` and ``dw`` are
    writable flat views of the values and of the gradient.
    """

    def __new__(cls, input_array):
        obj = np.asarray(input_array, dtype=np.float64)
        if obj.ndim != 3:
            raise ShapeError('Vol needs a (sy, sx, depth) array, got shape %s' % (obj.shape,))
        obj = np.ascontiguousarray(obj).view(cls)
        obj.grad = np.zeros(obj.shape)
        return obj

    def __array_finalize__(self, obj):
        if obj is None: return
        # copies and slices never share the parent's gradient
        self.grad = np.zeros(self.shape)

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        args = [input_.view(np.ndarray) if isinstance(input_, Vol) else input_
                for input_ in inputs]

        outputs = kwargs.pop('out', None)
        if outputs:
            kwargs['out'] = tuple(output.view(np.ndarray) if isinstance(output, Vol) else output
                                  for output in outputs)

        results = super(Vol, self).__array_ufunc__(ufunc, method, *args, **kwargs)
        if results is NotImplemented:
            return NotImplemented

        # arithmetic yields plain arrays, in-place ops hand back the target
        if outputs:
            return outputs[0] if len(outputs) == 1 else outputs
        return results

    @classmethod
    def zeros(cls, sx, sy, depth):
        return cls(np.zeros((sy, sx, depth)))

    @classmethod
    def full(cls, sx, sy, depth, c):
        return cls(np.full((sy, sx, depth), float(c)))

    @classmethod
    def from_values(cls, values, sx=None, sy=None, depth=None):
        values = np.asarray(values, dtype=np.float64).ravel()
        shape = (sx, sy, depth)
        if all(s is None for s in shape):
            sx, sy, depth = 1, 1, values.size
        elif any(s is None for s in shape):
            raise ShapeError('give all of sx, sy, depth or none of them, got %r' % (shape,))
        if values.size != sx * sy * depth:
            raise ShapeError('%d values cannot fill a %dx%dx%d volume' % (values.size, sx, sy, depth))
        return cls(values.reshape(sy, sx, depth).copy())

    @classmethod
    def random(cls, sx, sy, depth, rng, initializer='gaussian', fan_in=None):
        init = get_initializer(initializer) if isinstance(initializer, str) else initializer
        return cls(init(rng, (sy, sx, depth), fan_in or sx * sy * depth))

    @property
    def sx(self):
        return self.shape[1]

    @property
    def sy(self):
        return self.shape[0]

    @property
    def depth(self):
        return self.shape[2]

    @property
    def w(self):
        return self.view(np.ndarray).reshape(-1)

    @property
    def dw(self):
        return self.grad.reshape(-1)

    def get(self, x, y, d):
        return float(self.view(np.ndarray)[y, x, d])

    def set(self, x, y, d, v):
        self.view(np.ndarray)[y, x, d] = v

    def add(self, x, y, d, v):
        self.view(np.ndarray)[y, x, d] += v

    def get_grad(self, x, y, d):
        return float(self.grad[y, x, d])

    def set_grad(self, x, y, d, v):
        self.grad[y, x, d] = v

    def add_grad(self, x, y, d, v):
        self.grad[y, x, d] += v

    def accumulate(self, grad):
        """Add ``grad`` (any array with the same number of elements) into the gradient."""
        grad = np.asarray(grad)
        if grad.shape != self.grad.shape:
            grad = grad.reshape(*self.grad.shape)
        self.grad += grad

    def zero_grad(self):
        self.grad[...] = 0

    def clone(self):
        return Vol(self.view(np.ndarray).copy())

    def clone_and_zero(self):
        return Vol.zeros(self.sx, self.sy, self.depth)

    def set_const(self, c):
        self.view(np.ndarray)[...] = c

    def add_from(self, other):
        self.view(np.ndarray)[...] += np.asarray(other).reshape(self.shape)

    def add_from_scaled(self, other, a):
        self.view(np.ndarray)[...] += a * np.asarray(other).reshape(self.shape)

    def __repr__(self):
        return 'Vol(sx=%d, sy=%d, depth=%d)' % (self.sx, self.sy, self.depth)


# weight initializers: (rng, shape, fan_in) -> ndarray

def gaussian(rng, shape, fan_in):
    return rng.standard_normal(shape) * np.sqrt(1.0 / fan_in)


def he(rng, shape, fan_in):
    return rng.standard_normal(shape) * np.sqrt(2.0 / fan_in)


def uniform(rng, shape, fan_in):
    bound = 1 / np.sqrt(fan_in)
    return rng.uniform(-bound, bound, shape)


INITIALIZERS = {
    'gaussian': gaussian,
    'he': he,
    'uniform': uniform,
}


def get_initializer(name):
    try:
        return INITIALIZERS[name.lower()]
    except KeyError:
        raise ConfigError("unknown initializer '%s', available: %s" % (name, sorted(INITIALIZERS))) from None


Param = namedtuple('Param', ['vol', 'l1_decay_mul', 'l2_decay_mul', 'lr_mul'])


class Frame(object):
    """One layer's share of a forward pass, kept until the matching backward pass."""
    __slots__ = ('input', 'output', 'cache')

    def __init__(self, input_vol: Vol):
        self.input = input_vol
        self.output = None
        self.cache = {}


class _module(object):
    layer_type = None

    def __init__(self, in_sx, in_sy, in_depth):
        self.in_sx, self.in_sy, self.in_depth = in_sx, in_sy, in_depth
        self.out_sx, self.out_sy, self.out_depth = in_sx, in_sy, in_depth

    def __call__(self, frame: Frame, training=False):
        y = self.forward(frame, training)
        frame.output = y
        return y

    def forward(self, frame: Frame, training=False):
        raise NotImplementedError

    def backward(self, frame: Frame):
        frame.input.accumulate(self.grad_pass(frame, frame.output.grad))
        return 0.

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        raise NotImplementedError

    def params(self):
        return []

    def __repr__(self):
        return '%s(%dx%dx%d -> %dx%dx%d)' % (type(self).__name__,
                                             self.in_sx, self.in_sy, self.in_depth,
                                             self.out_sx, self.out_sy, self.out_depth)


class Input(_module):
    layer_type = 'input'

    def forward(self, frame: Frame, training=False):
        x = frame.input
        if x.shape != (self.out_sy, self.out_sx, self.out_depth):
            raise ShapeError('network expects a %dx%dx%d input volume, got %dx%dx%d'
                             % (self.out_sx, self.out_sy, self.out_depth, x.sx, x.sy, x.depth))
        return x

    def backward(self, frame: Frame):
        # output is the input itself, its gradient is already in place
        return 0.


class FullyConnected(_module):
    layer_type = 'fc'

    def __init__(self, in_sx, in_sy, in_depth, num_neurons, rng, bias_pref=0.,
                 l1_decay_mul=0., l2_decay_mul=1., initializer='gaussian'):
        super(FullyConnected, self).__init__(in_sx, in_sy, in_depth)
        self.num_inputs = in_sx * in_sy * in_depth
        self.out_sx, self.out_sy, self.out_depth = 1, 1, num_neurons
        self.l1_decay_mul = l1_decay_mul
        self.l2_decay_mul = l2_decay_mul
        # row i of the weight volume is the filter of neuron i
        self.weights = Vol.random(self.num_inputs, num_neurons, 1, rng, initializer, fan_in=self.num_inputs)
        self.biases = Vol.full(1, 1, num_neurons, bias_pref)

    @property
    def filters(self):
        return self.weights.view(np.ndarray).reshape(self.out_depth, self.num_inputs)

    def forward(self, frame: Frame, training=False):
        y = self.filters @ frame.input.w + self.biases.w
        return Vol.from_values(y)

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        y_grad = y_grad.ravel()
        self.weights.accumulate(np.outer(y_grad, frame.input.w))
        self.biases.accumulate(y_grad)
        return self.filters.T @ y_grad

    def params(self):
        return [Param(self.weights, self.l1_decay_mul, self.l2_decay_mul, 1.),
                Param(self.biases, 0., 0., 1.)]


class Tanh(_module):
    layer_type = 'tanh'

    def forward(self, frame: Frame, training=False):
        return Vol(np.tanh(frame.input))

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        y = frame.output
        return (1. - y * y) * y_grad


class Sigmoid(_module):
    layer_type = 'sigmoid'

    def forward(self, frame: Frame, training=False):
        return Vol(expit(frame.input))

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        y = frame.output
        return y * (1. - y) * y_grad


class ReLU(_module):
    layer_type = 'relu'

    def forward(self, frame: Frame, training=False):
        return Vol(np.maximum(0, frame.input))

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        return np.where(frame.output > 0, y_grad, 0.)


class Maxout(_module):
    """Keeps the largest of every ``group_size`` consecutive depth slices."""
    layer_type = 'maxout'

    def __init__(self, in_sx, in_sy, in_depth, group_size=2):
        super(Maxout, self).__init__(in_sx, in_sy, in_depth)
        if group_size < 1 or in_depth % group_size:
            raise ConfigError('maxout group_size %d does not divide input depth %d' % (group_size, in_depth))
        self.group_size = group_size
        self.out_depth = in_depth // group_size

    def _grouped(self, a):
        return np.asarray(a).reshape(self.in_sy, self.in_sx, self.out_depth, self.group_size)

    def forward(self, frame: Frame, training=False):
        x = self._grouped(frame.input)
        switches = x.argmax(-1)[..., None]
        frame.cache['switches'] = switches
        return Vol(np.take_along_axis(x, switches, -1)[..., 0])

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        x_grad = np.zeros((self.in_sy, self.in_sx, self.out_depth, self.group_size))
        np.put_along_axis(x_grad, frame.cache['switches'], y_grad[..., None], -1)
        return x_grad


class Dropout(_module):
    layer_type = 'dropout'

    def __init__(self, in_sx, in_sy, in_depth, rng, drop_prob=0.5):
        super(Dropout, self).__init__(in_sx, in_sy, in_depth)
        if not 0. <= drop_prob < 1.:
            raise ConfigError('drop_prob must lie in [0, 1), got %r' % (drop_prob,))
        self.drop_prob = drop_prob
        self.rng = np.random.default_rng(rng.integers(2 ** 32))

    def forward(self, frame: Frame, training=False):
        x = frame.input
        if not training:
            return x.clone()
        mask = (self.rng.random(x.shape) >= self.drop_prob) / (1. - self.drop_prob)
        frame.cache['mask'] = mask
        return Vol(x * mask)

    def grad_pass(self, frame: Frame, y_grad: np.ndarray):
        mask = frame.cache.get('mask')
        return y_grad if mask is None else y_grad * mask


def cross_entropy_loss(logits, target):
    # combine softmax, loss, and gradient
    logits = np.asarray(logits).ravel()
    logsoftmax = logits - logsumexp(logits)
    loss = -logsoftmax[target]
    grad = np.exp(logsoftmax)
    grad[target] -= 1
    return float(loss), grad


def hinge_loss(scores, target, margin=1.):
    scores = np.asarray(scores).ravel()
    diff = scores - scores[target] + margin
    diff[target] = 0.
    violated = diff > 0
    grad = violated.astype(np.float64)
    grad[target] -= violated.sum()
    return float(diff[violated].sum()), grad


def squared_loss(outputs, target, dims=None):
    outputs = np.asarray(outputs).ravel()
    grad = np.zeros_like(outputs)
    if dims is None:
        grad[:] = outputs - target
    else:
        grad[dims] = outputs[dims] - target
    return float(0.5 * np.sum(grad * grad)), grad


class LossLayer(_module):
    """A terminal layer: turns scores into a scalar loss and seeds the backward pass."""

    def __init__(self, in_sx, in_sy, in_depth):
        super(LossLayer, self).__init__(in_sx, in_sy, in_depth)
        self.num_inputs = in_sx * in_sy * in_depth
        self.out_sx, self.out_sy, self.out_depth = 1, 1, self.num_inputs

    def loss_and_grad(self, frame: Frame, loss_data):
        raise NotImplementedError

    def loss(self, frame: Frame, loss_data):
        return self.loss_and_grad(frame, loss_data)[0]

    def backward(self, frame: Frame, loss_data=None):
        if loss_data is None:
            raise RuntimeError('%s needs loss data to start the backward pass' % type(self).__name__)
        loss, x_grad = self.loss_and_grad(frame, loss_data)
        frame.input.accumulate(x_grad)
        return loss

    def _check_dim(self, dim):
        if not 0 <= dim < self.num_inputs:
            raise ShapeError('class index %d out of range for %d outputs' % (dim, self.num_inputs))


class Softmax(LossLayer):
    layer_type = 'softmax'

    def forward(self, frame: Frame, training=False):
        x = frame.input.w
        es = np.exp(x - x.max())
        return Vol.from_values(es / es.sum())

    def loss_and_grad(self, frame: Frame, loss_data):
        self._check_dim(loss_data.dim)
        return cross_entropy_loss(frame.input.w, loss_data.dim)


class SVM(LossLayer):
    layer_type = 'svm'

    def forward(self, frame: Frame, training=False):
        return Vol.from_values(frame.input.w)

    def loss_and_grad(self, frame: Frame, loss_data):
        self._check_dim(loss_data.dim)
        return hinge_loss(frame.input.w, loss_data.dim)


class Regression(LossLayer):
    layer_type = 'regression'

    def forward(self, frame: Frame, training=False):
        return Vol.from_values(frame.input.w)

    def loss_and_grad(self, frame: Frame, loss_data):
        if loss_data.target is not None:
            target = np.asarray(loss_data.target, dtype=np.float64).ravel()
            if target.size != self.num_inputs:
                raise ShapeError('regression target has %d values, network outputs %d'
                                 % (target.size, self.num_inputs))
            return squared_loss(frame.input.w, target)
        self._check_dim(loss_data.dim)
        return squared_loss(frame.input.w, loss_data.val, dims=loss_data.dim)
