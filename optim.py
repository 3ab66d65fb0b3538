import logging
import time
from dataclasses import asdict, dataclass

import numpy as np

from nn import ConfigError

logger = logging.getLogger(__name__)

METHODS = ('sgd', 'nesterov', 'adagrad', 'adadelta', 'windowgrad', 'adam')


@dataclass(frozen=True)
class TrainerOptions:
    learning_rate: float = 0.01
    momentum: float = 0.9
    batch_size: int = 1
    l1_decay: float = 0.
    l2_decay: float = 0.
    method: str = 'sgd'
    ro: float = 0.95
    eps: float = 1e-8
    beta1: float = 0.9
    beta2: float = 0.999

    def __post_init__(self):
        if self.learning_rate <= 0 and self.method != 'adadelta':
            raise ConfigError('learning_rate must be positive, got %r' % (self.learning_rate,))
        if not 0 <= self.momentum < 1:
            raise ConfigError('momentum must lie in [0, 1), got %r' % (self.momentum,))
        if int(self.batch_size) != self.batch_size or self.batch_size < 1:
            raise ConfigError('batch_size must be an integer >= 1, got %r' % (self.batch_size,))
        if self.l1_decay < 0 or self.l2_decay < 0:
            raise ConfigError('decay rates must be non-negative')
        if self.method not in METHODS:
            raise ConfigError("unknown method '%s', available: %s" % (self.method, list(METHODS)))


@dataclass
class TrainStats:
    fwd_time: float
    bwd_time: float
    l1_decay_loss: float
    l2_decay_loss: float
    cost_loss: float
    loss: float


class Trainer(object):
    """
    Trains a :class:`model.Net` one example at a time.

    Parameter gradients accumulate over ``batch_size`` calls to :meth:`train`;
    the update then uses their average and clears them. Rebuilding the net
    with :meth:`model.Net.make_layers` resets the per-parameter state.
    """

    def __init__(self, net, options=None, **kwargs):
        self.net = net
        self.options = options if options is not None else TrainerOptions(**kwargs)
        self.k = 0
        self.steps = 0
        # per-parameter accumulators keyed by id() of the parameter volume
        self.gsum = {}
        self.xsum = {}
        # holds the volumes the accumulators belong to, so their ids stay unique
        self._vols = None
        logger.debug('trainer options: %s', asdict(self.options))

    def train(self, x, loss_data):
        opt = self.options

        start = time.perf_counter()
        self.net.forward(x, training=True)
        fwd_time = (time.perf_counter() - start) * 1000

        start = time.perf_counter()
        cost_loss = self.net.backward(loss_data)
        bwd_time = (time.perf_counter() - start) * 1000

        l1_decay_loss = l2_decay_loss = 0.
        self.k += 1
        if self.k % opt.batch_size == 0:
            params = self.net.params()
            self._check_params(params)
            self.steps += 1
            for p in params:
                w = p.vol.view(np.ndarray)
                l1_decay = opt.l1_decay * p.l1_decay_mul
                l2_decay = opt.l2_decay * p.l2_decay_mul
                l1_decay_loss += l1_decay * np.abs(w).sum()
                l2_decay_loss += l2_decay * (w * w).sum() / 2
                g = p.vol.grad / opt.batch_size + l2_decay * w + l1_decay * np.sign(w)
                self._step(p.vol, g, opt.learning_rate * p.lr_mul)
                p.vol.zero_grad()
            logger.debug('update %d: cost %.6f, l1 %.6f, l2 %.6f',
                         self.steps, cost_loss, l1_decay_loss, l2_decay_loss)

        return TrainStats(fwd_time=fwd_time, bwd_time=bwd_time,
                          l1_decay_loss=float(l1_decay_loss), l2_decay_loss=float(l2_decay_loss),
                          cost_loss=cost_loss, loss=float(cost_loss + l1_decay_loss + l2_decay_loss))

    def _check_params(self, params):
        vols = [p.vol for p in params]
        if self._vols is not None and (len(vols) != len(self._vols)
                                       or any(a is not b for a, b in zip(vols, self._vols))):
            logger.debug('parameters changed, resetting optimizer state')
            self.gsum.clear()
            self.xsum.clear()
            self.steps = 0
        self._vols = vols

    def _state(self, store, p):
        if id(p) not in store:
            store[id(p)] = np.zeros(p.shape)
        return store[id(p)]

    def _step(self, p, g, lr):
        opt = self.options
        w = p.view(np.ndarray)
        if opt.method == 'sgd':
            if opt.momentum > 0:
                v = self._state(self.gsum, p)
                v *= opt.momentum
                v -= lr * g
                w += v
            else:
                w -= lr * g
        elif opt.method == 'nesterov':
            v = self._state(self.gsum, p)
            prev = v.copy()
            v *= opt.momentum
            v += lr * g
            w += opt.momentum * prev - (1 + opt.momentum) * v
        elif opt.method == 'adagrad':
            gsum = self._state(self.gsum, p)
            gsum += g * g
            w -= lr / np.sqrt(gsum + opt.eps) * g
        elif opt.method == 'windowgrad':
            gsum = self._state(self.gsum, p)
            gsum *= opt.ro
            gsum += (1 - opt.ro) * g * g
            w -= lr / np.sqrt(gsum + opt.eps) * g
        elif opt.method == 'adadelta':
            gsum = self._state(self.gsum, p)
            xsum = self._state(self.xsum, p)
            gsum *= opt.ro
            gsum += (1 - opt.ro) * g * g
            dx = -np.sqrt((xsum + opt.eps) / (gsum + opt.eps)) * g
            xsum *= opt.ro
            xsum += (1 - opt.ro) * dx * dx
            w += dx
        elif opt.method == 'adam':
            m = self._state(self.gsum, p)
            v = self._state(self.xsum, p)
            m *= opt.beta1
            m += (1 - opt.beta1) * g
            v *= opt.beta2
            v += (1 - opt.beta2) * g * g
            m_hat = m / (1 - opt.beta1 ** self.steps)
            v_hat = v / (1 - opt.beta2 ** self.steps)
            w -= lr * m_hat / (np.sqrt(v_hat) + opt.eps)
