import logging

import numpy as np


logger = logging.getLogger(__name__)


# ---------------------- default solver parameters -----------------------------
DEFAULT_OPTIONS = {'max_iterations':        100,   # maximum number of outer iterations
                   'accept_step_threshold': 0.1,   # Armijo parameter (fraction of linear improvement required)
                   'grad_threshold':        1e-5,  # tolerance on gradient and step infinity-norms
                   'regularization':        1e-9}  # added to the diagonal of the free Hessian

N_ALPHAS = 10  # number of backtracking step lengths: 1, 1/2, ..., 1/512

STATUS_MESSAGES = {'gradient':       'Gradient norm smaller than tolerance',
                   'clamped':        'All dimensions are clamped',
                   'step':           'Newton step smaller than tolerance',
                   'max_iterations': 'Maximum main iterations exceeded'}


class BoxQPError(Exception):
    """Base class for errors raised by the box-QP solver."""


class InvalidArgument(BoxQPError, ValueError):
    """An input or a configuration value does not match what the solver expects."""

    def __init__(self, argument, expected, message=None):
        self.argument = argument
        self.expected = expected
        if message is None:
            message = 'Invalid argument: %s has wrong dimension (it should be %s)' % (argument, expected)
        super().__init__(message)


class BackwardError(BoxQPError, np.linalg.LinAlgError):
    """Cholesky factorization of the free Hessian failed (not positive definite)."""

    def __init__(self, n_free, regularization):
        self.n_free         = n_free
        self.regularization = regularization
        super().__init__('backward_error: free Hessian (%d x %d, regularization %g) is not positive definite'
                         % (n_free, n_free, regularization))


class BoxQPSolution:
    """
    Result of BoxQPSolver.solve

      x                    - solution                                  (n)
      free_indices         - free dimensions, in increasing order      (n_free)
      clamped_indices      - clamped dimensions, in increasing order   (n - n_free)
      free_hessian_inverse - inverse of the regularized free Hessian   (n_free * n_free)
      iterations           - number of outer iterations performed
      status               - termination reason, a key of STATUS_MESSAGES
    """

    def __init__(self, x, free_indices, clamped_indices, free_hessian_inverse, iterations, status):
        self.x                    = x
        self.free_indices         = free_indices
        self.clamped_indices      = clamped_indices
        self.free_hessian_inverse = free_hessian_inverse
        self.iterations           = iterations
        self.status               = status

    @property
    def message(self):
        return STATUS_MESSAGES[self.status]

    def __repr__(self):
        return 'BoxQPSolution(x=%s, free_indices=%s, clamped_indices=%s, status=%r)' % (
            np.array2string(self.x, precision=6), self.free_indices, self.clamped_indices, self.status)


def quadratic_value(H, q, x):
    """Objective 0.5*x'*H*x + q'*x"""
    return 0.5 * np.dot(x, np.dot(H, x)) + np.dot(q, x)


class BoxQPSolver:
    """
    Projected-Newton solver for box-constrained quadratic programs

        minimize 0.5*x'*H*x + q'*x  s.t.  lb <= x <= ub

    The free/clamped partition is recomputed at every iteration, a Newton step
    is taken on the free subspace (Cholesky of the free Hessian) and a
    projected backtracking line search enforces sufficient decrease.

    Meant to be called repeatedly with warm starts, e.g. from the backward pass
    of control-limited DDP, where free_hessian_inverse of the returned solution
    gives the feedback gains of the free controls.

    Working buffers are owned by the instance and reused between calls, so an
    instance must not be shared by concurrent callers.
    """

    def __init__(self, nx,
                 max_iterations=DEFAULT_OPTIONS['max_iterations'],
                 accept_step_threshold=DEFAULT_OPTIONS['accept_step_threshold'],
                 grad_threshold=DEFAULT_OPTIONS['grad_threshold'],
                 regularization=DEFAULT_OPTIONS['regularization']):
        self.nx                    = nx
        self.max_iterations        = max_iterations
        self.accept_step_threshold = accept_step_threshold
        self.grad_threshold        = grad_threshold
        self.regularization        = regularization

        self._alphas   = tuple(1. / 2.**i for i in range(N_ALPHAS))
        self._solution = None

    # ------------------------------ configuration ------------------------------
    @property
    def nx(self):
        return self._nx

    @nx.setter
    def nx(self, nx):
        if isinstance(nx, bool) or not isinstance(nx, (int, np.integer)) or nx < 1:
            raise InvalidArgument('nx', 'a positive integer', 'Invalid argument: nx should be a positive integer')
        self._nx = int(nx)

        # working buffers, dim = [nx]
        self._x     = np.zeros(self._nx)
        self._x_new = np.zeros(self._nx)
        self._g     = np.zeros(self._nx)
        self._dx    = np.zeros(self._nx)

        self._Hff_inv = np.zeros((0, 0))

    @property
    def max_iterations(self):
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value):
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
            raise InvalidArgument('max_iterations', 'a non-negative integer',
                                  'Invalid argument: max_iterations should be a non-negative integer')
        self._max_iterations = int(value)

    @property
    def accept_step_threshold(self):
        return self._accept_step_threshold

    @accept_step_threshold.setter
    def accept_step_threshold(self, value):
        if not 0. < value < 1.:
            raise InvalidArgument('accept_step_threshold', 'in (0, 1)',
                                  'Invalid argument: accept_step_threshold should be between 0 and 1')
        self._accept_step_threshold = float(value)

    @property
    def grad_threshold(self):
        return self._grad_threshold

    @grad_threshold.setter
    def grad_threshold(self, value):
        if not value >= 0.:
            raise InvalidArgument('grad_threshold', '>= 0',
                                  'Invalid argument: grad_threshold should be positive')
        self._grad_threshold = float(value)

    @property
    def regularization(self):
        return self._regularization

    @regularization.setter
    def regularization(self, value):
        if not value >= 0.:
            raise InvalidArgument('regularization', '>= 0',
                                  'Invalid argument: regularization should be positive')
        self._regularization = float(value)

    @property
    def alphas(self):
        return self._alphas

    @property
    def solution(self):
        return self._solution

    # ---------------------------------- solve ----------------------------------
    def solve(self, H, q, lb, ub, x_init):
        """
        Minimize 0.5*x'*H*x + q'*x  s.t. lb<=x<=ub

         inputs:
            H       - symmetric matrix, PD on the free subspace   (n * n)
            q       - bias vector                                  (n)
            lb      - lower bounds                                 (n)
            ub      - upper bounds                                 (n)
            x_init  - warm start, projected onto the box           (n)

         output:
            BoxQPSolution

         raises:
            InvalidArgument - an input has the wrong shape
            BackwardError   - the free Hessian is not positive definite
        """
        H, q, lb, ub, x_init = self._check_inputs(H, q, lb, ub, x_init)

        reg = self._regularization
        x   = self._x      # current iterate
        g   = self._g      # gradient at x
        dx  = self._dx     # search direction
        xc  = self._x_new  # line-search candidate

        # feasible warm start
        np.clip(x_init, lb, ub, out=x)

        if self._max_iterations == 0:
            free, clamped = self._partition(H, q, lb, ub)
            self._Hff_inv = np.zeros((0, 0))
            return self._finish(0, free, clamped, 'max_iterations')

        for k in range(self._max_iterations):
            free, clamped = self._partition(H, q, lb, ub)

            # check convergence
            gnorm = np.abs(g).max()
            if gnorm <= self._grad_threshold or not free:
                if k == 0:
                    self._Hff_inv = self._factorize_inverse(H[np.ix_(free, free)], reg)[1]
                status = 'gradient' if gnorm <= self._grad_threshold else 'clamped'
                return self._finish(k + 1, free, clamped, status)

            # Newton step along the free subspace, clamped dimensions held at their bounds
            Hff = H[np.ix_(free, free)]  # dim = [free, free]
            Hfc = H[np.ix_(free, clamped)]  # dim = [free, clamped]
            L, self._Hff_inv = self._factorize_inverse(Hff, reg)

            rhs = -q[free]
            if clamped:
                rhs -= np.dot(Hfc, x[clamped])
            dxf = np.linalg.solve(L.T, np.linalg.solve(L, rhs)) - x[free]
            dx[:]    = 0
            dx[free] = dxf

            # no improvement possible anymore
            if np.abs(dx).max() < self._grad_threshold:
                return self._finish(k + 1, free, clamped, 'step')

            # projected backtracking linesearch
            fold = quadratic_value(H, q, x)
            for alpha in self._alphas:
                np.multiply(dx, alpha, out=xc)
                xc += x
                np.clip(xc, lb, ub, out=xc)
                fnew = quadratic_value(H, q, xc)
                if fold - fnew > self._accept_step_threshold * np.dot(g, x - xc):
                    logger.debug('iter %-3d  value % -12.6g |g| %-9.3g  reduction %-9.3g  step %-8g  n_clamped %d',
                                 k + 1, fnew, gnorm, fold - fnew, alpha, len(clamped))
                    x[:] = xc
                    break
            else:
                logger.debug('iter %-3d  value % -12.6g |g| %-9.3g  NO STEP (line search exhausted)  n_clamped %d',
                             k + 1, fold, gnorm, len(clamped))

        return self._finish(self._max_iterations, free, clamped, 'max_iterations')

    # -------------------------------- internals --------------------------------
    def _check_inputs(self, H, q, lb, ub, x_init):
        n = self._nx
        H = np.asarray(H, dtype=float)
        if H.shape != (n, n):
            raise InvalidArgument('H', '%d,%d' % (n, n))
        vectors = []
        for name, v in (('q', q), ('lb', lb), ('ub', ub), ('x_init', x_init)):
            v = np.asarray(v, dtype=float)
            if v.shape != (n,):
                raise InvalidArgument(name, '%d' % n)
            vectors.append(v)
        return (H,) + tuple(vectors)

    def _partition(self, H, q, lb, ub):
        """Gradient at the current iterate and the free/clamped index split"""
        x = self._x
        g = self._g
        np.dot(H, x, out=g)
        g += q

        # a dimension is clamped when it sits on a bound and the gradient pushes outwards
        is_clamped = ((x == lb) & (g > 0)) | ((x == ub) & (g < 0))
        free       = np.flatnonzero(~is_clamped).tolist()
        clamped    = np.flatnonzero(is_clamped).tolist()
        return free, clamped

    @staticmethod
    def _factorize_inverse(Hff, reg):
        """Cholesky factor L (Hff = L*L') and inverse of the regularized free Hessian"""
        nf = Hff.shape[0]
        if nf == 0:
            return np.zeros((0, 0)), np.zeros((0, 0))
        if reg != 0.:
            Hff = Hff + reg * np.eye(nf)
        try:
            L = np.linalg.cholesky(Hff)
        except np.linalg.LinAlgError:
            raise BackwardError(nf, reg)
        Hff_inv = np.linalg.solve(L.T, np.linalg.solve(L, np.eye(nf)))
        return L, Hff_inv

    def _finish(self, iterations, free, clamped, status):
        self._solution = BoxQPSolution(x=self._x.copy(),
                                       free_indices=list(free),
                                       clamped_indices=list(clamped),
                                       free_hessian_inverse=self._Hff_inv.copy(),
                                       iterations=iterations,
                                       status=status)
        logger.debug('RESULT: %s. iterations %d  n_free %d  n_clamped %d',
                     STATUS_MESSAGES[status], iterations, len(free), len(clamped))
        return self._solution
