import logging

import matplotlib.pyplot as plt
import numpy as np
from sklearn.metrics import accuracy_score
from sklearn.utils import shuffle
from tqdm import tqdm

from model import LayerDef, LayerType, LossData, Net
from optim import Trainer, TrainerOptions
from utils import read_toy_dataset, to_vols

logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s: %(message)s')

epoch = 30
dataset = 'spiral'
num_classes = 3

train_data, train_labels = read_toy_dataset(dataset, n_samples=600, noise=0.2, seed=0)
test_data, test_labels = read_toy_dataset(dataset, n_samples=300, noise=0.2, seed=1)

rng = np.random.default_rng(0)
my_net = Net([
    LayerDef(LayerType.INPUT, out_sx=1, out_sy=1, out_depth=2),
    LayerDef(LayerType.FC, num_neurons=20, activation=LayerType.RELU),
    LayerDef(LayerType.FC, num_neurons=20, activation=LayerType.RELU),
    LayerDef(LayerType.SOFTMAX, num_classes=num_classes),
], rng)
trainer = Trainer(my_net, TrainerOptions(learning_rate=0.01, momentum=0.9, batch_size=10, l2_decay=0.001))


def predict(data):
    predictions = []
    for x in to_vols(data):
        my_net.forward(x)
        predictions.append(my_net.prediction())
    return np.array(predictions)


loss_history = []
avg_loss = 0

for e in range(epoch):
    train_loss = 0
    e_data, e_labels = shuffle(train_data, train_labels, random_state=e)

    with tqdm(total=len(e_data)) as pbar:
        for x, t in zip(to_vols(e_data), e_labels):
            stats = trainer.train(x, LossData(dim=int(t)))

            loss_history.append(stats.loss)
            train_loss += stats.loss
            if not avg_loss:
                avg_loss = stats.loss
            else:
                avg_loss *= 0.98
                avg_loss += 0.02 * stats.loss

            pbar.set_postfix(loss=avg_loss)
            pbar.update()

    train_loss /= len(e_data)
    train_acc = accuracy_score(train_labels, predict(train_data))
    print("Epoch %d: training loss = %.4f, training acc = %.2f" % (e + 1, train_loss, train_acc * 100))

print("Accuracy on test data: %.2f" % (accuracy_score(test_labels, predict(test_data)) * 100))

loss_history = np.array(loss_history)
cum_loss = np.cumsum(np.pad(loss_history, (50, 50), 'edge'))
moving_avg_loss = (cum_loss[101:] - cum_loss[:-101]) / 101
plt.plot(loss_history, label='original loss')
plt.plot(moving_avg_loss, label='smoothed loss')
plt.ylabel('cross entropy')
plt.xlabel('steps')
plt.legend()
plt.show()
