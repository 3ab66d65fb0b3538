import numpy as np
import pytest
import torch
import torch.nn.functional as F

from model import LayerDef, LayerType, LossData, Net, desugar
from nn import (ConfigError, Dropout, Frame, FullyConnected, Maxout, ReLU, Sigmoid, ShapeError, Softmax,
                Tanh, Vol, cross_entropy_loss, hinge_loss, squared_loss)
from optim import METHODS, Trainer, TrainerOptions
from utils import read_toy_dataset, to_vols

torch.set_default_dtype(torch.float64)

REFERENCE_DEFS = [
    LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
    LayerDef(LayerType.FC, num_neurons=5, activation=LayerType.TANH),
    LayerDef(LayerType.FC, num_neurons=5, activation=LayerType.TANH),
    LayerDef(LayerType.SOFTMAX, num_classes=3),
]


def create_test_net(defs=REFERENCE_DEFS, **options):
    rng = np.random.default_rng(0)
    net = Net()
    net.make_layers(defs, rng)
    options = dict(dict(learning_rate=0.0001, momentum=0.0, batch_size=1, l2_decay=0.0), **options)
    trainer = Trainer(net, TrainerOptions(**options))
    return net, trainer, rng


def random_input(rng, n=2):
    return Vol.from_values(rng.random(n) * 2 - 1)


def check_input_gradient(net, x, loss_data, delta=1e-6):
    # x.dw must already hold the analytic gradient at the current parameters
    for i in range(len(x.w)):
        grad_analytic = x.dw[i]

        x_old = x.w[i]
        x.w[i] += delta
        c0 = net.cost_loss(x, loss_data)
        x.w[i] -= 2 * delta
        c1 = net.cost_loss(x, loss_data)
        x.w[i] = x_old

        grad_numeric = (c0 - c1) / (2 * delta)
        if abs(grad_analytic) < 1e-10 and abs(grad_numeric) < 1e-10:
            continue
        rel_error = abs(grad_analytic - grad_numeric) / abs(grad_analytic + grad_numeric)
        assert rel_error < 1e-2, (i, grad_numeric, grad_analytic)


def test_initialize():
    # tanh layers are separate, softmax gets its own fully connected layer
    net, _, _ = create_test_net()
    assert len(net.layers) == 7
    assert [l.layer_type for l in net.layers] == ['input', 'fc', 'tanh', 'fc', 'tanh', 'fc', 'softmax']


@pytest.mark.parametrize('num_classes', [2, 3, 10])
def test_layer_count_does_not_depend_on_classes(num_classes):
    defs = REFERENCE_DEFS[:-1] + [LayerDef(LayerType.SOFTMAX, num_classes=num_classes)]
    net = Net(defs, 1)
    assert len(net.layers) == 7
    assert net.layers[-1].out_depth == num_classes


def test_forward():
    net, _, _ = create_test_net()

    x = Vol.from_values([0.2, -0.3])
    pv = net.forward(x, False)

    assert len(pv.w) == 3
    assert np.all(pv.w > 0) and np.all(pv.w < 1)
    assert abs(pv.w.sum() - 1) < 1e-4


def test_train():
    net, trainer, rng = create_test_net()

    # no l1/l2 decay, so a small step must help the ground truth class
    for _ in range(100):
        x = random_input(rng)
        pv = net.forward(x, False).w.copy()
        gti = int(rng.integers(3))
        trainer.train(x, LossData(dim=gti))
        pv2 = net.forward(x, False).w
        assert pv2[gti] > pv[gti]


def test_gradient():
    # only the gradient at the data is checked, but it depends on every layer above
    net, trainer, rng = create_test_net()
    x = random_input(rng)
    gti = int(rng.integers(3))
    trainer.train(x, LossData(dim=gti))
    # learning rate is tiny, so the step barely moves the parameters
    check_input_gradient(net, x, LossData(dim=gti))


@pytest.mark.parametrize('defs, loss_data', [
    ([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=4),
      LayerDef(LayerType.FC, num_neurons=6, activation=LayerType.SIGMOID),
      LayerDef(LayerType.SOFTMAX, num_classes=3)], LossData(dim=1)),
    ([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=4),
      LayerDef(LayerType.FC, num_neurons=6, activation=LayerType.RELU),
      LayerDef(LayerType.FC, num_neurons=6, activation=LayerType.RELU),
      LayerDef(LayerType.SOFTMAX, num_classes=3)], LossData(dim=2)),
    ([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=4),
      LayerDef(LayerType.FC, num_neurons=8, activation=LayerType.MAXOUT, group_size=2),
      LayerDef(LayerType.SOFTMAX, num_classes=3)], LossData(dim=0)),
    ([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=4),
      LayerDef(LayerType.FC, num_neurons=5, activation=LayerType.TANH),
      LayerDef(LayerType.SVM, num_classes=3)], LossData(dim=1)),
    ([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=4),
      LayerDef(LayerType.FC, num_neurons=5, activation=LayerType.TANH),
      LayerDef(LayerType.REGRESSION, num_neurons=2)], LossData(target=[0.5, -0.25])),
    ([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=4),
      LayerDef(LayerType.FC, num_neurons=5, activation=LayerType.TANH),
      LayerDef(LayerType.REGRESSION, num_neurons=3)], LossData(dim=2, val=1.5)),
    ([LayerDef(LayerType.INPUT, out_sx=2, out_sy=3, out_depth=2),
      LayerDef(LayerType.FC, num_neurons=5, activation=LayerType.TANH),
      LayerDef(LayerType.SOFTMAX, num_classes=4)], LossData(dim=3)),
])
def test_gradient_other_layers(defs, loss_data):
    net, _, rng = create_test_net(defs)
    first = defs[0]
    x = Vol.from_values(rng.random(first.out_sx * first.out_sy * first.out_depth) * 2 - 1,
                        first.out_sx, first.out_sy, first.out_depth)
    net.forward(x, True)
    net.backward(loss_data)
    check_input_gradient(net, x, loss_data)


def test_evaluation_is_pure():
    net, trainer, rng = create_test_net()
    x = random_input(rng)
    trainer.train(x, LossData(dim=1))

    w_before = x.w.copy()
    dw_before = x.dw.copy()
    param_grads = [p.vol.grad.copy() for p in net.params()]

    y1 = net.forward(x, False).w.copy()
    y2 = net.forward(x, False).w.copy()
    c1 = net.cost_loss(x, LossData(dim=1))
    c2 = net.cost_loss(x, LossData(dim=1))

    assert np.array_equal(y1, y2)
    assert c1 == c2
    assert np.array_equal(x.w, w_before)
    assert np.array_equal(x.dw, dw_before)
    for p, g in zip(net.params(), param_grads):
        assert np.array_equal(p.vol.grad, g)


def test_same_seed_same_network():
    net1 = Net(REFERENCE_DEFS, np.random.default_rng(42))
    net2 = Net(REFERENCE_DEFS, 42)
    for p1, p2 in zip(net1.params(), net2.params()):
        assert np.array_equal(p1.vol, p2.vol)

    x = Vol.from_values([0.7, 0.1])
    assert np.array_equal(net1.forward(x).w, net2.forward(x).w)

    net3 = Net(REFERENCE_DEFS, 43)
    assert not np.array_equal(net1.params()[0].vol, net3.params()[0].vol)


def test_prediction():
    net, _, _ = create_test_net()
    pv = net.forward(Vol.from_values([0.2, -0.3]))
    assert net.prediction() == int(np.argmax(pv.w))


# ---- volumes ----

def test_vol_layout():
    v = Vol.zeros(2, 3, 4)
    assert (v.sx, v.sy, v.depth) == (2, 3, 4)
    assert len(v.w) == len(v.dw) == 24

    v.set(1, 2, 3, 5.)
    assert v.w[((2 * 2) + 1) * 4 + 3] == 5.
    assert v.get(1, 2, 3) == 5.
    v.add(1, 2, 3, 1.)
    assert v.get(1, 2, 3) == 6.

    v.add_grad(0, 1, 2, 2.)
    v.add_grad(0, 1, 2, 0.5)
    assert v.dw[((1 * 2) + 0) * 4 + 2] == 2.5
    assert v.get_grad(0, 1, 2) == 2.5
    v.set_grad(0, 1, 2, -1.)
    assert v.get_grad(0, 1, 2) == -1.


def test_vol_from_values():
    v = Vol.from_values([1, 2, 3])
    assert (v.sx, v.sy, v.depth) == (1, 1, 3)
    assert np.array_equal(v.dw, np.zeros(3))

    v = Vol.from_values(np.arange(6), 3, 1, 2)
    assert v.get(2, 0, 1) == 5.

    with pytest.raises(ShapeError):
        Vol.from_values([1, 2, 3], 2, 2, 1)
    with pytest.raises(ShapeError):
        Vol.from_values([1, 2], 2)
    with pytest.raises(ShapeError):
        Vol.from_values([1, 2], 1, depth=2)


def test_vol_copies_have_their_own_gradient():
    v = Vol.from_values([1., 2.])
    v.dw[:] = 3.
    c = v.clone()
    assert np.array_equal(c.w, v.w)
    assert np.array_equal(c.dw, [0., 0.])
    c.w[0] = 10.
    assert v.w[0] == 1.

    z = v.clone_and_zero()
    assert z.shape == v.shape and not z.w.any()

    # arithmetic gives plain arrays, in-place ops keep the volume
    assert type(v * 2) is np.ndarray
    v += 1
    assert isinstance(v, Vol) and np.array_equal(v.dw, [3., 3.])


def test_vol_in_place_helpers():
    v = Vol.full(1, 1, 3, 2.)
    v.add_from([1, 1, 1])
    v.add_from_scaled([1, 2, 3], 0.5)
    assert np.allclose(v.w, [3.5, 4., 4.5])
    v.set_const(0)
    assert not v.w.any()
    v.dw[:] = 1
    v.zero_grad()
    assert not v.dw.any()


# ---- layers against torch ----

def run_layer(layer, x, y_grad):
    frame = Frame(x)
    y = layer(frame, training=False)
    y.accumulate(y_grad)
    layer.backward(frame)
    return y


@pytest.mark.parametrize('in_shape', [(1, 1, 3), (1, 1, 16), (2, 3, 4)])
@pytest.mark.parametrize('out_size', [1, 7])
def test_fully_connected(in_shape, out_size):
    rng = np.random.default_rng(0)
    layer = FullyConnected(*in_shape, out_size, rng, bias_pref=0.1)
    x = Vol.random(*in_shape, rng)
    y_grad = rng.standard_normal(out_size)

    x1 = torch.tensor(x.w.copy(), requires_grad=True)
    n1 = torch.nn.Linear(x.size, out_size)
    with torch.no_grad():
        n1.weight[:] = torch.tensor(layer.filters)
        n1.bias[:] = torch.tensor(layer.biases.w)

    y1 = n1(x1)
    y2 = run_layer(layer, x, y_grad)
    assert np.allclose(y1.detach().numpy(), y2.w)

    (y1 * torch.tensor(y_grad)).sum().backward()
    assert np.allclose(x1.grad.numpy(), x.dw)
    assert np.allclose(n1.weight.grad.numpy(), layer.weights.grad.reshape(out_size, -1))
    assert np.allclose(n1.bias.grad.numpy(), layer.biases.dw)


def test_fully_connected_params():
    layer = FullyConnected(1, 1, 4, 3, np.random.default_rng(0), l1_decay_mul=0.5, l2_decay_mul=2.)
    weights, biases = layer.params()
    assert weights.vol is layer.weights and (weights.l1_decay_mul, weights.l2_decay_mul) == (0.5, 2.)
    assert biases.vol is layer.biases and (biases.l1_decay_mul, biases.l2_decay_mul) == (0., 0.)
    assert np.array_equal(layer.biases.w, np.zeros(3))


@pytest.mark.parametrize('layer_cls, fn', [(Tanh, torch.tanh), (Sigmoid, torch.sigmoid), (ReLU, torch.relu)])
def test_activations(layer_cls, fn):
    rng = np.random.default_rng(1)
    x = Vol(rng.standard_normal((3, 2, 4)))
    y_grad = rng.standard_normal(x.shape)
    x1 = torch.tensor(np.asarray(x).copy(), requires_grad=True)

    y1 = fn(x1)
    y2 = run_layer(layer_cls(2, 3, 4), x, y_grad)
    assert y2.shape == x.shape
    assert np.allclose(y1.detach().numpy(), y2)

    (y1 * torch.tensor(y_grad)).sum().backward()
    assert np.allclose(x1.grad.numpy(), x.grad)


def test_backward_accumulates_into_input():
    x = Vol.from_values([0.5, -1.])
    x.dw[:] = 1.
    run_layer(Tanh(1, 1, 2), x, np.ones(2))
    assert np.allclose(x.dw, 1 + (1 - np.tanh([0.5, -1.]) ** 2))


def test_maxout():
    rng = np.random.default_rng(2)
    x = Vol(rng.standard_normal((2, 3, 6)))
    y_grad = rng.standard_normal((2, 3, 2))
    x1 = torch.tensor(np.asarray(x).copy(), requires_grad=True)

    y1 = x1.view(2, 3, 2, 3).max(-1).values
    y2 = run_layer(Maxout(3, 2, 6, group_size=3), x, y_grad)
    assert (y2.sx, y2.sy, y2.depth) == (3, 2, 2)
    assert np.allclose(y1.detach().numpy(), y2)

    (y1 * torch.tensor(y_grad)).sum().backward()
    assert np.allclose(x1.grad.numpy(), x.grad)


def test_maxout_group_must_divide_depth():
    with pytest.raises(ConfigError):
        Maxout(1, 1, 5, group_size=2)


def test_dropout():
    rng = np.random.default_rng(3)
    layer = Dropout(1, 1, 1000, rng, drop_prob=0.3)
    x = Vol.full(1, 1, 1000, 2.)

    frame = Frame(x)
    y = layer(frame, training=False)
    assert np.array_equal(y.w, x.w) and y is not x
    assert 'mask' not in frame.cache

    frame = Frame(x)
    y = layer(frame, training=True)
    dropped = y.w == 0
    assert 0.2 < dropped.mean() < 0.4
    assert np.allclose(y.w[~dropped], 2. / 0.7)

    y.accumulate(np.ones(1000))
    layer.backward(frame)
    assert np.array_equal(x.dw == 0, dropped)


def test_dropout_probability_range():
    with pytest.raises(ConfigError):
        Dropout(1, 1, 4, np.random.default_rng(0), drop_prob=1.)


@pytest.mark.parametrize('seed', list(range(20)))
def test_cross_entropy_loss(seed):
    rng = np.random.default_rng(seed)
    logits = rng.standard_normal(10) * 100
    target = int(rng.integers(10))

    x1 = torch.tensor(logits, requires_grad=True)
    loss1 = F.cross_entropy(x1[None], torch.tensor([target]))
    loss2, grad = cross_entropy_loss(logits, target)
    assert np.allclose(loss1.detach().numpy(), loss2)

    loss1.backward()
    assert np.allclose(x1.grad.numpy(), grad)


@pytest.mark.parametrize('seed', list(range(10)))
def test_hinge_loss(seed):
    rng = np.random.default_rng(seed)
    scores = rng.standard_normal(5)
    target = int(rng.integers(5))

    x1 = torch.tensor(scores, requires_grad=True)
    # torch averages over the classes
    loss1 = F.multi_margin_loss(x1[None], torch.tensor([target])) * 5
    loss2, grad = hinge_loss(scores, target)
    assert np.allclose(loss1.detach().numpy(), loss2)

    loss1.backward()
    assert np.allclose(x1.grad.numpy(), grad)


def test_squared_loss():
    rng = np.random.default_rng(0)
    outputs = rng.standard_normal(4)
    target = rng.standard_normal(4)

    x1 = torch.tensor(outputs, requires_grad=True)
    loss1 = 0.5 * F.mse_loss(x1, torch.tensor(target), reduction='sum')
    loss2, grad = squared_loss(outputs, target)
    assert np.allclose(loss1.detach().numpy(), loss2)

    loss1.backward()
    assert np.allclose(x1.grad.numpy(), grad)

    loss, grad = squared_loss(outputs, 1., dims=2)
    assert np.isclose(loss, 0.5 * (outputs[2] - 1) ** 2)
    assert np.count_nonzero(grad) == 1


def test_softmax_extreme_inputs():
    frame = Frame(Vol.from_values([1000., -1000., 999.]))
    p = Softmax(1, 1, 3)(frame).w
    assert np.all(np.isfinite(p))
    assert abs(p.sum() - 1) < 1e-12
    assert p[0] > p[2] > p[1]


# ---- desugaring ----

def types(defs):
    return [d.type.value for d in defs]


def test_desugar():
    assert types(desugar(REFERENCE_DEFS)) == ['input', 'fc', 'tanh', 'fc', 'tanh', 'fc', 'softmax']

    defs = desugar([
        dict(type='input', out_sx=1, out_sy=1, out_depth=2),
        dict(type='fc', num_neurons=4, activation='relu', drop_prob=0.5),
        dict(type='fc', num_neurons=4, activation='maxout', group_size=2),
        dict(type='fc', num_neurons=3),
        dict(type='svm', num_classes=2),
    ])
    assert types(defs) == ['input', 'fc', 'relu', 'dropout', 'fc', 'maxout', 'fc', 'fc', 'svm']
    assert defs[1].bias_pref == 0.1 and defs[4].bias_pref == 0.
    assert defs[3].drop_prob == 0.5
    assert defs[5].group_size == 2
    assert defs[7].num_neurons == 2

    defs = desugar([LayerDef('input', out_sx=1, out_sy=1, out_depth=2),
                    LayerDef('fc', num_neurons=3, activation='none'),
                    LayerDef('regression', num_neurons=2)])
    assert types(defs) == ['input', 'fc', 'fc', 'regression']


def test_shapes_follow_previous_layer():
    net = Net([LayerDef(LayerType.INPUT, out_sx=2, out_sy=2, out_depth=3),
               LayerDef(LayerType.FC, num_neurons=8, activation=LayerType.MAXOUT, group_size=4),
               LayerDef(LayerType.DROPOUT, drop_prob=0.2),
               LayerDef(LayerType.REGRESSION, num_neurons=1)], 0)
    assert net.layers[1].num_inputs == 12
    assert [l.out_depth for l in net.layers] == [3, 8, 2, 2, 1, 1]
    assert net.layers[2].in_depth == 8


# ---- errors ----

@pytest.mark.parametrize('defs', [
    [],
    [LayerDef(LayerType.FC, num_neurons=2)],
    [LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=0)],
    [LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2), LayerDef(LayerType.FC, num_neurons=0)],
    [LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2), LayerDef(LayerType.SOFTMAX, num_classes=0)],
    [LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
     LayerDef(LayerType.SOFTMAX, num_classes=2), LayerDef(LayerType.FC, num_neurons=2)],
    [LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
     LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2)],
    [LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=3), LayerDef(LayerType.MAXOUT, group_size=2)],
])
def test_bad_definitions(defs):
    net = Net()
    with pytest.raises(ConfigError):
        net.make_layers(defs, 0)
    assert net.layers == []


def test_unknown_types():
    with pytest.raises(ConfigError):
        LayerDef('conv')
    with pytest.raises(ConfigError):
        LayerDef(LayerType.FC, num_neurons=2, activation='softplus')
    with pytest.raises(ConfigError):
        LayerDef(LayerType.FC, num_neurons=2, activation=LayerType.SOFTMAX)
    with pytest.raises(ConfigError):
        Net([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
             LayerDef(LayerType.FC, num_neurons=2, initializer='orthogonal')], 0)


def test_runtime_errors():
    net, _, _ = create_test_net()
    with pytest.raises(RuntimeError):
        net.backward(LossData(dim=0))
    with pytest.raises(ShapeError):
        net.forward(Vol.from_values([1., 2., 3.]))
    with pytest.raises(ShapeError):
        net.cost_loss(Vol.from_values([1., 2.]), LossData(dim=3))
    with pytest.raises(RuntimeError):
        Net().forward(Vol.from_values([1.]))

    no_loss = Net([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
                   LayerDef(LayerType.FC, num_neurons=2)], 0)
    with pytest.raises(RuntimeError):
        no_loss.cost_loss(Vol.from_values([1., 2.]), LossData(dim=0))


@pytest.mark.parametrize('options', [
    dict(learning_rate=0),
    dict(momentum=1.),
    dict(momentum=-0.1),
    dict(batch_size=0),
    dict(batch_size=1.5),
    dict(l2_decay=-1),
    dict(method='rmsprop'),
])
def test_bad_trainer_options(options):
    with pytest.raises(ConfigError):
        TrainerOptions(**options)


# ---- trainer ----

def param_copies(net):
    return [p.vol.w.copy() for p in net.params()]


def grads_at(params, x, loss_data):
    net = Net(REFERENCE_DEFS, 0)
    for p, w in zip(net.params(), params):
        p.vol.w[:] = w
    net.forward(x, training=True)
    net.backward(loss_data)
    return [p.vol.dw.copy() for p in net.params()]


def test_sgd_update_rule():
    lr, momentum, l1, l2 = 0.05, 0.9, 0.001, 0.01
    net, trainer, _ = create_test_net(learning_rate=lr, momentum=momentum, l1_decay=l1, l2_decay=l2)
    x = Vol.from_values([0.4, -0.8])
    loss_data = LossData(dim=2)

    velocity = [np.zeros_like(w) for w in param_copies(net)]
    for _ in range(2):
        before = param_copies(net)
        grads = grads_at(before, x, loss_data)
        stats = trainer.train(x, loss_data)

        expected_l2 = 0.
        for p, w, g, v in zip(net.params(), before, grads, velocity):
            decayed = g + l2 * p.l2_decay_mul * w + l1 * p.l1_decay_mul * np.sign(w)
            v *= momentum
            v -= lr * decayed
            assert np.allclose(p.vol.w, w + v)
            assert not p.vol.dw.any()
            expected_l2 += l2 * p.l2_decay_mul * (w * w).sum() / 2
        assert np.isclose(stats.l2_decay_loss, expected_l2)
        assert np.isclose(stats.loss, stats.cost_loss + stats.l1_decay_loss + stats.l2_decay_loss)

    # one accumulator per parameter volume, kept across steps
    assert len(trainer.gsum) == len(net.params())


@pytest.mark.parametrize('method', ['sgd', 'adam'])
def test_rebuild_resets_trainer_state(method):
    lr = 0.05
    net, trainer, _ = create_test_net(learning_rate=lr, momentum=0.9, method=method)
    x = Vol.from_values([0.4, -0.8])
    loss_data = LossData(dim=2)
    for _ in range(3):
        trainer.train(x, loss_data)

    net.make_layers(REFERENCE_DEFS, np.random.default_rng(1))
    before = param_copies(net)
    grads = grads_at(before, x, loss_data)
    trainer.train(x, loss_data)

    assert set(trainer.gsum) == {id(p.vol) for p in net.params()}
    assert trainer.steps == 1
    if method == 'sgd':
        # fresh velocity: the first step is plain gradient descent
        for p, w, g in zip(net.params(), before, grads):
            assert np.allclose(p.vol.w, w - lr * g)


def test_biases_are_not_decayed():
    net, trainer, _ = create_test_net(learning_rate=0.1, l2_decay=10.)
    x = Vol.from_values([0.4, -0.8])
    for layer in net.layers[1::2]:
        layer.biases.set_const(1.)
    before = param_copies(net)
    grads = grads_at(before, x, LossData(dim=0))
    trainer.train(x, LossData(dim=0))

    for p, w, g in zip(net.params(), before, grads):
        if p.l2_decay_mul == 0:
            assert np.allclose(p.vol.w, w - 0.1 * g)


def test_batch_accumulation():
    net, trainer, rng = create_test_net(learning_rate=0.01, batch_size=2)
    x1, x2 = random_input(rng), random_input(rng)
    before = param_copies(net)
    g1 = grads_at(before, x1, LossData(dim=0))
    g2 = grads_at(before, x2, LossData(dim=1))

    trainer.train(x1, LossData(dim=0))
    for p, w in zip(net.params(), before):
        assert np.array_equal(p.vol.w, w)

    trainer.train(x2, LossData(dim=1))
    for p, w, a, b in zip(net.params(), before, g1, g2):
        assert np.allclose(p.vol.w, w - 0.01 * (a + b) / 2)
        assert not p.vol.dw.any()


def test_train_leaves_input_gradient():
    net, trainer, rng = create_test_net()
    x = random_input(rng)
    trainer.train(x, LossData(dim=0))
    assert x.dw.any()


@pytest.mark.parametrize('method', METHODS)
def test_methods_reduce_loss(method):
    net, trainer, _ = create_test_net(method=method, learning_rate=0.01, momentum=0.9)
    x = Vol.from_values([0.3, 0.9])
    loss_data = LossData(dim=1)

    before = net.cost_loss(x, loss_data)
    for _ in range(20):
        trainer.train(x, loss_data)
    assert net.cost_loss(x, loss_data) < before


def test_trainer_keyword_options():
    net = Net(REFERENCE_DEFS, 0)
    trainer = Trainer(net, learning_rate=0.5, method='adam')
    assert trainer.options == TrainerOptions(learning_rate=0.5, method='adam')


# ---- toy data ----

@pytest.mark.parametrize('name, num_classes', [('moons', 2), ('circles', 2), ('spiral', 3)])
def test_read_toy_dataset(name, num_classes):
    data, labels = read_toy_dataset(name, n_samples=120, seed=0)
    assert data.shape == (120, 2)
    assert np.allclose(data.mean(0), 0)
    assert set(labels.tolist()) == set(range(num_classes))

    vols = to_vols(data[:3])
    assert [(v.sx, v.sy, v.depth) for v in vols] == [(1, 1, 2)] * 3
    assert np.array_equal(vols[1].w, data[1])

    with pytest.raises(ValueError):
        read_toy_dataset('blobs')


def test_learns_moons():
    data, labels = read_toy_dataset('moons', n_samples=200, noise=0.1, seed=0)
    net = Net([LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
               LayerDef(LayerType.FC, num_neurons=10, activation=LayerType.RELU),
               LayerDef(LayerType.FC, num_neurons=10, activation=LayerType.RELU),
               LayerDef(LayerType.SOFTMAX, num_classes=2)], 0)
    trainer = Trainer(net, TrainerOptions(learning_rate=0.01, momentum=0.9, batch_size=5))

    vols = to_vols(data)
    for _ in range(30):
        for x, t in zip(vols, labels):
            trainer.train(x, LossData(dim=int(t)))

    predictions = []
    for x in vols:
        net.forward(x)
        predictions.append(net.prediction())
    assert np.mean(np.array(predictions) == labels) > 0.8
