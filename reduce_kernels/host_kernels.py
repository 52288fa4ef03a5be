"""
Group programs for the host device, one per reduction strategy.

Each program receives the group's context, a uint32 view of the input, the
global accumulator cell and the element count `n`. Statements act on all
lanes of the group at once; `ctx.barrier()` marks the points where the
device kernels synchronise the group.
"""


def naive_atomic(ctx, data, output, n):
    idx = ctx.global_index()
    output.add(data[idx[idx < n]])


def masked_atomic(ctx, data, output, n):
    # lane 0 clears the group cell
    ctx.shared[0] = 0
    ctx.barrier()

    idx = ctx.global_index()
    ctx.shared_atomic_add(0, data[idx[idx < n]])
    ctx.barrier()

    output.add(ctx.shared[:1])


def _fold_sequential(ctx):
    shared = ctx.shared
    stride = ctx.group_size // 2
    while stride > 0:
        lanes = ctx.lanes[:stride]
        shared[lanes] += shared[lanes + stride]
        ctx.barrier()
        stride >>= 1


def _fold_interleaved(ctx):
    shared = ctx.shared
    stride = 1
    while stride < ctx.group_size:
        lanes = ctx.lanes[ctx.lanes % (2 * stride) == 0]
        shared[lanes] += shared[lanes + stride]
        ctx.barrier()
        stride <<= 1


def tree_basic(ctx, data, output, n):
    ctx.shared[ctx.lanes] = ctx.load(data, ctx.global_index(), n)
    ctx.barrier()
    _fold_sequential(ctx)
    output.add(ctx.shared[:1])


def tree_precombine(ctx, data, output, n):
    idx = ctx.global_index(elements_per_thread=2)
    ctx.shared[ctx.lanes] = ctx.load(data, idx, n) + ctx.load(data, idx + ctx.group_size, n)
    ctx.barrier()
    _fold_sequential(ctx)
    output.add(ctx.shared[:1])


def tree_interleaved(ctx, data, output, n):
    ctx.shared[ctx.lanes] = ctx.load(data, ctx.global_index(), n)
    ctx.barrier()
    _fold_interleaved(ctx)
    output.add(ctx.shared[:1])


PROGRAMS = {
    "naive_atomic": naive_atomic,
    "masked_atomic": masked_atomic,
    "tree_basic": tree_basic,
    "tree_precombine": tree_precombine,
    "tree_interleaved": tree_interleaved,
}
