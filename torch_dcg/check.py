import torch


class ShapeException(Exception):
    def __init__(self, name, shape, expected_shape):
        self.name = name
        self.shape = shape
        self.expected_shape = expected_shape
        super().__init__(f"{name} has shape {shape} expected {expected_shape}")


def check_vector(name:str,
                 v:torch.Tensor,
                 size:int):
    """
    Check a dense vector

    Parameters
    ----------
    name: str
        name reported in the exception
    v: torch.Tensor
        [size] the vector
    size: int
        expected length
    """
    if not isinstance(v, torch.Tensor):
        raise TypeError(f"{name} must be a torch.Tensor, got {type(v).__name__}")
    if not v.ndim == 1:
        raise ShapeException(name, tuple(v.shape), f"[{size}]")
    if not v.shape[0] == size:
        raise ShapeException(name, tuple(v.shape), f"[{size}]")


def check_square(num_rows:int,
                 num_cols:int):
    """
    Check the operator of a linear system is square

    Parameters
    ----------
    num_rows: int
        number of rows of the operator
    num_cols: int
        number of columns of the operator
    """
    if not num_rows == num_cols:
        raise ShapeException("operator", (num_rows, num_cols), "(n,n)")


def check_shape(shape:tuple):
    """
    Check a logical matrix shape

    Parameters
    ----------
    shape: tuple
        (m,n) shape of the matrix
    """
    if not (len(shape) == 2 and shape[0] > 0 and shape[1] > 0):
        raise ShapeException("shape", tuple(shape), "(m,n)")


def check_row(key:int,
              row:torch.Tensor,
              ncol:int):
    """
    Check a single matrix row

    Parameters
    ----------
    key: int
        row index
    row: torch.Tensor
        [ncol] dense or sparse row
    ncol: int
        number of columns of the matrix
    """
    if not row.ndim == 1:
        raise ShapeException(f"row {key}", tuple(row.shape), f"[{ncol}]")
    if not row.shape[0] == ncol:
        raise ShapeException(f"row {key}", tuple(row.shape), f"[{ncol}]")


def check_keys(keys:torch.Tensor,
               num_rows:int):
    """
    Check the row indices of a distributed matrix

    Parameters
    ----------
    keys: torch.Tensor
        [nrow] int64 row indices of all partitions
    num_rows: int
        number of rows of the matrix
    """
    if keys.numel() == 0:
        return
    if not (int(keys.min()) >= 0 and int(keys.max()) < num_rows):
        raise ShapeException("row keys", (int(keys.min()), int(keys.max())), f"indices in [0, {num_rows})")
    if not torch.unique(keys).numel() == keys.numel():
        raise ValueError(f"row keys must be unique, got {keys.numel() - torch.unique(keys).numel()} duplicates")
