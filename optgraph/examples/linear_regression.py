# linear_regression.py
import numpy as np
from optgraph.core.ir import IRGraph
from optgraph.core.session import Session
from optgraph.core.optim import SGD, Adagrad


def create_dataset(num_samples=200, num_features=3, seed=0):
    rng = np.random.default_rng(seed)
    true_w = rng.normal(size=(num_features, 1))
    true_b = rng.normal(size=(1,))
    X = rng.normal(size=(num_samples, num_features))
    y = X @ true_w + true_b + 0.05 * rng.normal(size=(num_samples, 1))
    return X.astype(np.float32), y.astype(np.float32), true_w, true_b


def build_model(graph, num_samples, num_features):
    X = graph.placeholder((num_samples, num_features), name="X")
    y = graph.placeholder((num_samples, 1), name="y")
    with graph.name_scope("linear"):
        w = graph.variable(np.zeros((num_features, 1), dtype=np.float32), name="w")
        b = graph.variable(np.zeros((1,), dtype=np.float32), name="b")
        pred = graph.matmul(X, w) + b
    with graph.name_scope("loss"):
        loss = (pred - y).square().mean()
    return X, y, w, b, loss


def train(optimizer_factory, epochs=200, log_every=50):
    X_data, y_data, true_w, true_b = create_dataset()
    graph = IRGraph(name="linear_regression")
    X, y, w, b, loss = build_model(graph, *X_data.shape)

    optimizer = optimizer_factory(graph)
    train_ops = optimizer.minimize(loss)

    session = Session(graph, verbose=True)
    session.initialize()
    feed = {X: X_data, y: y_data}

    for epoch in range(1, epochs + 1):
        session.run(train_ops, feed_dict=feed)
        if epoch % log_every == 0:
            current_loss, lr = session.run([loss, optimizer.learning_rate], feed_dict=feed)
            print(f"  Epoch {epoch}/{epochs}, Loss: {float(current_loss):.6f}, LR: {float(lr):.4f}")

    print(f"  Learned w: {session.value(w).ravel()}, true w: {true_w.ravel()}")
    print(f"  Learned b: {session.value(b)}, true b: {true_b}")
    return session.value(w), session.value(b)


def main():
    print("Training with SGD + momentum")
    train(lambda g: SGD(g, learning_rate=0.05, momentum=0.9, verbose=True))

    print("\nTraining with Nesterov SGD and learning rate decay")
    train(lambda g: SGD(g, learning_rate=0.05, momentum=0.9, nesterov=True, decay=1e-3, verbose=True))

    print("\nTraining with Adagrad")
    train(lambda g: Adagrad(g, learning_rate=0.5, verbose=True))


if __name__ == "__main__":
    main()
