import logging

import numpy as np

from boxQP import BoxQPSolver, quadratic_value


"""A demo of the box-QP solver used as the control-limited step of a DDP backward pass"""

logger = logging.getLogger('demo_box_qp')


class DoubleIntegratorBackwardPass:
    """
    Feedback policy of a planar double integrator under torque limits.

    At every knot the control cost-to-go is the quadratic model

        Q(du) = 0.5*du'*Quu*du + du'*(Qu + Qux*dx)

    and the control correction is limited to u_lims - u. The feedforward term
    comes from the box-QP; the feedback gain only acts on the free controls and
    reuses the inverse free Hessian returned by the solver.
    """

    def __init__(self):
        # env parameters
        self.dt     = 0.05
        self.T      = 40
        self.x_dim  = 4
        self.u_dim  = 2
        self.u_lims = np.array([[-1., 1.],
                                [-0.5, 0.5]])  # control limits

        # cost function parameters
        self.Q = np.diag([10., 10., 1., 1.])
        self.R = 0.05 * np.eye(self.u_dim)

        # dynamics x_{k+1} = A*x_k + B*u_k
        self.A = np.eye(self.x_dim)
        self.A[0, 2] = self.A[1, 3] = self.dt
        self.B = np.zeros((self.x_dim, self.u_dim))
        self.B[2, 0] = self.B[3, 1] = self.dt

        self.qp = BoxQPSolver(self.u_dim, max_iterations=50, regularization=1e-6)

    def backward(self, x, u):
        # x dim = [n, T+1], u dim = [m, T]
        n, m, T = self.x_dim, self.u_dim, self.T

        k  = np.zeros((m, T))
        K  = np.zeros((T, m, n))
        Vx  = np.dot(self.Q, x[:, T])
        Vxx = self.Q.copy()

        du_warm = np.zeros(m)
        for i in reversed(range(T)):
            Qu  = np.dot(self.R, u[:, i]) + np.dot(self.B.T, Vx)
            Qx  = np.dot(self.Q, x[:, i]) + np.dot(self.A.T, Vx)
            Quu = self.R + np.dot(np.dot(self.B.T, Vxx), self.B)
            Qux = np.dot(np.dot(self.B.T, Vxx), self.A)
            Qxx = self.Q + np.dot(np.dot(self.A.T, Vxx), self.A)

            lower = self.u_lims[:, 0] - u[:, i]
            upper = self.u_lims[:, 1] - u[:, i]
            sol = self.qp.solve(Quu, Qu, lower, upper, du_warm)

            k_i = sol.x
            K_i = np.zeros((m, n))
            if sol.free_indices:
                K_i[sol.free_indices, :] = -np.dot(sol.free_hessian_inverse, Qux[sol.free_indices, :])

            Vx  = Qx + np.dot(np.dot(K_i.T, Quu), k_i) + np.dot(K_i.T, Qu) + np.dot(Qux.T, k_i)
            Vxx = Qxx + np.dot(np.dot(K_i.T, Quu), K_i) + np.dot(K_i.T, Qux) + np.dot(Qux.T, K_i)
            Vxx = 0.5 * (Vxx + Vxx.T)

            k[:, i]  = k_i
            K[i, :, :] = K_i
            du_warm = k_i  # warm start the next knot

            logger.debug('knot %-3d  Q(k) % -10.4g  clamped %s  iterations %d',
                         i, quadratic_value(Quu, Qu, k_i), sol.clamped_indices, sol.iterations)

        return k, K

    def forward(self, x0, u, x=None, k=None, K=None):
        T = self.T
        x_new = np.zeros((self.x_dim, T + 1))
        u_new = np.zeros((self.u_dim, T))
        x_new[:, 0] = x0
        for i in range(T):
            u_new[:, i] = u[:, i]
            if k is not None:
                u_new[:, i] += k[:, i] + np.dot(K[i, :, :], x_new[:, i] - x[:, i])
            u_new[:, i] = np.clip(u_new[:, i], self.u_lims[:, 0], self.u_lims[:, 1])
            x_new[:, i + 1] = np.dot(self.A, x_new[:, i]) + np.dot(self.B, u_new[:, i])
        return x_new, u_new

    def cost(self, x, u):
        return 0.5 * (np.einsum('it,ij,jt->', x, self.Q, x) + np.einsum('it,ij,jt->', u, self.R, u))


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(message)s')

    env = DoubleIntegratorBackwardPass()
    x0  = np.array([1., -1., 0., 0.])
    u   = np.zeros((env.u_dim, env.T))

    x, u = env.forward(x0, u)
    logger.info('initial cost: %-12.6g', env.cost(x, u))
    for it in range(5):
        k, K = env.backward(x, u)
        x, u = env.forward(x0, u, x, k, K)
        logger.info('iteration %d  cost %-12.6g  saturated controls %d',
                    it + 1, env.cost(x, u), int(np.sum(np.isclose(np.abs(u), env.u_lims[:, 1:]))))
