import torch
from torch.autograd import grad


def jacobian_factory(func):
    """
    Wrap `func(x, *args)` into a function returning its Jacobian at `x` as a
    (n_out, n_in) matrix. Scalar outputs give a single row.
    """
    def jacobian_func(input_tensor, *func_args, **func_kwargs):
        input_tensor = input_tensor.detach().clone().requires_grad_(True)

        # Call the original function with any additional arguments
        output_tensor = func(input_tensor, *func_args, **func_kwargs)

        jacobian = torch.zeros(
            output_tensor.numel(), input_tensor.numel(),
            dtype=input_tensor.dtype)

        # Compute the Jacobian entries
        for i in range(output_tensor.numel()):
            grad_output = torch.zeros_like(output_tensor)
            grad_output.view(-1)[i] = 1.0
            grad_input = grad(
                output_tensor, input_tensor, grad_outputs=grad_output,
                retain_graph=True, allow_unused=True)[0]
            if grad_input is not None:
                jacobian[i, :] = grad_input.view(-1)

        return jacobian

    return jacobian_func


def symmetrize(mat):
    return 0.5 * (mat + mat.transpose(-1, -2))


def is_spd(mat):
    """
    Symmetric positive definite, to working precision.
    """
    if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
        return False
    if not torch.all(torch.isfinite(mat)):
        return False
    scale = mat.abs().max().clamp(min=1.0)
    if not torch.allclose(mat, mat.T, atol=1e-8 * scale, rtol=1e-6):
        return False
    _, info = torch.linalg.cholesky_ex(symmetrize(mat))
    return bool(info == 0)


def logdet_2pi(cov):
    """
    log det(2 pi cov), the Gaussian normaliser.
    """
    d = cov.shape[-1]
    return d * torch.log(torch.tensor(2 * torch.pi, dtype=cov.dtype)) + torch.logdet(cov)
