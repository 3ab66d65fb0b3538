import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from nn import (ConfigError, Dropout, Frame, FullyConnected, Input, LossLayer, Maxout, ReLU,
                Regression, Sigmoid, Softmax, SVM, Tanh, Vol)

logger = logging.getLogger(__name__)


class LayerType(str, Enum):
    INPUT = 'input'
    FC = 'fc'
    SOFTMAX = 'softmax'
    SVM = 'svm'
    REGRESSION = 'regression'
    DROPOUT = 'dropout'
    TANH = 'tanh'
    SIGMOID = 'sigmoid'
    RELU = 'relu'
    MAXOUT = 'maxout'


LOSS_TYPES = (LayerType.SOFTMAX, LayerType.SVM, LayerType.REGRESSION)
ACTIVATION_TYPES = (LayerType.TANH, LayerType.SIGMOID, LayerType.RELU, LayerType.MAXOUT)

ACTIVATIONS = {
    LayerType.TANH: Tanh,
    LayerType.SIGMOID: Sigmoid,
    LayerType.RELU: ReLU,
}


def _layer_type(value, field_name):
    try:
        return LayerType(value)
    except ValueError:
        raise ConfigError("unknown %s '%s', available: %s"
                          % (field_name, value, [t.value for t in LayerType])) from None


@dataclass(frozen=True)
class LayerDef:
    """
    Declarative description of a layer. A single definition may stand for
    several primitive layers, see :func:`desugar`.
    """
    type: LayerType
    out_sx: int = 0
    out_sy: int = 0
    out_depth: int = 0
    num_neurons: int = 0
    num_classes: int = 0
    activation: Optional[LayerType] = None
    group_size: int = 2
    drop_prob: Optional[float] = None
    bias_pref: Optional[float] = None
    l1_decay_mul: float = 0.
    l2_decay_mul: float = 1.
    initializer: str = 'gaussian'

    def __post_init__(self):
        object.__setattr__(self, 'type', _layer_type(self.type, 'layer type'))
        if self.activation in ('none', ''):
            object.__setattr__(self, 'activation', None)
        if self.activation is not None:
            activation = _layer_type(self.activation, 'activation')
            if activation not in ACTIVATION_TYPES:
                raise ConfigError("'%s' is not an activation" % activation.value)
            object.__setattr__(self, 'activation', activation)


@dataclass(frozen=True)
class LossData:
    """
    What a loss layer compares the network output against: a class index
    ``dim`` for softmax and svm, a full ``target`` vector or a single
    (``dim``, ``val``) pair for regression.
    """
    dim: int = 0
    val: float = 0.
    target: Optional[Sequence[float]] = None


def _positive(value, what, layer_def):
    if value is None or value <= 0:
        raise ConfigError('%s must be positive in %s layer, got %r' % (what, layer_def.type.value, value))


def desugar(defs):
    """
    Expand layer definitions into the primitive layers the network runs.

    fc layers get their activation (and dropout, if ``drop_prob`` is set) as
    separate layers after them; softmax, svm and regression get the fully
    connected layer that produces their scores in front of them.
    """
    defs = [d if isinstance(d, LayerDef) else LayerDef(**d) for d in defs]
    if not defs or defs[0].type != LayerType.INPUT:
        raise ConfigError('the first layer must be an input layer')

    new_defs = []
    for i, d in enumerate(defs):
        if d.type == LayerType.INPUT and i > 0:
            raise ConfigError('input layer at position %d, only the first layer may be input' % i)
        if d.type in LOSS_TYPES and i != len(defs) - 1:
            raise ConfigError('%s layer at position %d, loss layers must come last' % (d.type.value, i))

        if d.type in (LayerType.SOFTMAX, LayerType.SVM):
            _positive(d.num_classes, 'num_classes', d)
            new_defs.append(LayerDef(LayerType.FC, num_neurons=d.num_classes, bias_pref=0.))
        elif d.type == LayerType.REGRESSION:
            _positive(d.num_neurons, 'num_neurons', d)
            new_defs.append(LayerDef(LayerType.FC, num_neurons=d.num_neurons, bias_pref=0.))

        if d.type == LayerType.FC and d.bias_pref is None:
            # a small positive bias keeps relu units alive at the start
            d = replace(d, bias_pref=0.1 if d.activation == LayerType.RELU else 0.)
        new_defs.append(d)

        if d.type == LayerType.FC:
            if d.activation == LayerType.MAXOUT:
                new_defs.append(LayerDef(LayerType.MAXOUT, group_size=d.group_size))
            elif d.activation is not None:
                new_defs.append(LayerDef(d.activation))
            if d.drop_prob is not None:
                new_defs.append(LayerDef(LayerType.DROPOUT, drop_prob=d.drop_prob))
    return new_defs


def _build_layer(d: LayerDef, in_shape, rng):
    if d.type == LayerType.INPUT:
        _positive(d.out_sx, 'out_sx', d)
        _positive(d.out_sy, 'out_sy', d)
        _positive(d.out_depth, 'out_depth', d)
        return Input(d.out_sx, d.out_sy, d.out_depth)

    sx, sy, depth = in_shape
    if d.type == LayerType.FC:
        _positive(d.num_neurons, 'num_neurons', d)
        return FullyConnected(sx, sy, depth, d.num_neurons, rng, bias_pref=d.bias_pref,
                              l1_decay_mul=d.l1_decay_mul, l2_decay_mul=d.l2_decay_mul,
                              initializer=d.initializer)
    if d.type in ACTIVATIONS:
        return ACTIVATIONS[d.type](sx, sy, depth)
    if d.type == LayerType.MAXOUT:
        return Maxout(sx, sy, depth, group_size=d.group_size)
    if d.type == LayerType.DROPOUT:
        return Dropout(sx, sy, depth, rng, drop_prob=0.5 if d.drop_prob is None else d.drop_prob)
    if d.type == LayerType.SOFTMAX:
        return Softmax(sx, sy, depth)
    if d.type == LayerType.SVM:
        return SVM(sx, sy, depth)
    if d.type == LayerType.REGRESSION:
        return Regression(sx, sy, depth)
    raise ConfigError("no layer for type '%s'" % d.type.value)


class Net(object):
    """
    An ordered stack of primitive layers.

    The frames of the most recent forward pass are kept so that
    :meth:`backward` can replay it; a net is not safe to share between
    threads.
    """

    def __init__(self, defs=None, rng=None):
        self.layers = []
        self._frames = None
        if defs is not None:
            self.make_layers(defs, rng)

    def make_layers(self, defs, rng=None):
        """
        Build the layers described by ``defs``. ``rng`` is a
        ``numpy.random.Generator`` or a seed; the same seed gives the same
        network.
        """
        self.layers = []
        self._frames = None
        rng = np.random.default_rng(rng)

        layers = []
        in_shape = None
        for d in desugar(defs):
            layer = _build_layer(d, in_shape, rng)
            logger.debug('layer %d: %r', len(layers), layer)
            layers.append(layer)
            in_shape = (layer.out_sx, layer.out_sy, layer.out_depth)

        self.layers = layers
        logger.info('built network with %d layers, %d parameters',
                    len(layers), sum(p.vol.size for p in self.params()))
        return self

    def forward(self, x: Vol, training=False):
        if not self.layers:
            raise RuntimeError('network has no layers, call make_layers first')
        if not isinstance(x, Vol):
            x = Vol.from_values(x)
        frames = []
        for layer in self.layers:
            frame = Frame(x)
            x = layer(frame, training)
            frames.append(frame)
        self._frames = frames
        return x

    def _loss_layer(self):
        if not self.layers or not isinstance(self.layers[-1], LossLayer):
            raise RuntimeError('the last layer of the network is not a loss layer')
        return self.layers[-1]

    def cost_loss(self, x: Vol, loss_data: LossData):
        """Loss of ``x`` against ``loss_data``, leaving every gradient untouched."""
        loss_layer = self._loss_layer()
        self.forward(x, training=False)
        return loss_layer.loss(self._frames[-1], loss_data)

    def backward(self, loss_data: LossData):
        """
        Backpropagate the loss of the last forward pass. Activation gradients
        (the input volume's included) are reset first, parameter gradients
        accumulate. Returns the loss.
        """
        loss_layer = self._loss_layer()
        if self._frames is None:
            raise RuntimeError('backward called before forward')

        for frame in self._frames:
            frame.input.zero_grad()
            frame.output.zero_grad()

        loss = loss_layer.backward(self._frames[-1], loss_data)
        for layer, frame in zip(reversed(self.layers[:-1]), reversed(self._frames[:-1])):
            loss += layer.backward(frame)
        return loss

    def params(self):
        params = []
        for layer in self.layers:
            params.extend(layer.params())
        return params

    def prediction(self):
        """Index of the highest output of the last forward pass."""
        if self._frames is None:
            raise RuntimeError('prediction called before forward')
        return int(np.argmax(self._frames[-1].output.w))
