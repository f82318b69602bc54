import numpy as np

from demo_box_qp import DoubleIntegratorBackwardPass


def test_backward_pass_respects_limits_and_improves_cost():
    env = DoubleIntegratorBackwardPass()
    x0 = np.array([1., -1., 0., 0.])

    x, u = env.forward(x0, np.zeros((env.u_dim, env.T)))
    initial_cost = env.cost(x, u)

    k, K = env.backward(x, u)
    x_new, u_new = env.forward(x0, u, x, k, K)

    assert k.shape == (env.u_dim, env.T)
    assert K.shape == (env.T, env.u_dim, env.x_dim)
    assert np.all(u_new >= env.u_lims[:, :1]) and np.all(u_new <= env.u_lims[:, 1:])
    assert env.cost(x_new, u_new) < initial_cost
