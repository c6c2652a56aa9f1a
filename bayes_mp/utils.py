import torch


def isscalar(v):
    """
    how is this not a builtin?
    """
    v = torch.as_tensor(v)
    return (
        v.shape == torch.Size([]) or
        v.shape == torch.Size([1]))


def as_float_tensor(v, dtype=None):
    """
    tensor in the default float type, copied so callers cannot alias our state.
    """
    if dtype is None:
        dtype = torch.get_default_dtype()
    return torch.as_tensor(v, dtype=dtype).clone()


def as_scalar(v, dtype=None):
    """
    0-d float tensor from anything scalar-like.
    """
    v = as_float_tensor(v, dtype=dtype)
    if not isscalar(v):
        raise ValueError(f"expected a scalar, got shape {tuple(v.shape)}")
    return v.reshape(())


def as_matrix(cov, dim, dtype=None):
    """
    Covariance matrix from a scalar (isotropic), a vector (diagonal)
    or a matrix (full).
    """
    cov = as_float_tensor(cov, dtype=dtype)
    if cov.ndim == 0 or cov.shape == torch.Size([1]):
        return cov.reshape(()) * torch.eye(dim, dtype=cov.dtype)
    elif cov.ndim == 1 and cov.shape[0] == dim:
        return torch.diag(cov)
    elif cov.ndim == 2 and cov.shape == torch.Size([dim, dim]):
        return cov
    raise ValueError(
        f"Invalid covariance of shape {tuple(cov.shape)} for dimension {dim}: "
        "must be a float, 1D tensor (for diagonal), or 2D tensor (for full covariance matrix)")
