"""WGSL compute shader sources for the wgpu backend.

Every buffer holds f32 values, whatever the logical dtype of the array.
Flat kernels run 256 threads per workgroup over a 2-D dispatch grid so
arrays larger than 65535 workgroups still fit; the flat thread index is
``gid.y * num_workgroups.x * 256 + gid.x``.
"""

# ============================================================================
# Elementwise
# ============================================================================

_BINARY_TEMPLATE = """
// params[0] = out shape (padded to rank 4), params[1] = a strides,
// params[2] = b strides (0 on broadcast axes), params[3].x = numel
@group(0) @binding(0)
var<storage, read> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
@group(0) @binding(3)
var<uniform> params: array<vec4<u32>, 4>;

fn binary_op(x: f32, y: f32) -> f32 {
    return EXPR;
}

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= params[3].x) {
        return;
    }
    let shape = params[0];
    let a_strides = params[1];
    let b_strides = params[2];
    var rem = idx;
    let i3 = rem % shape.w;
    rem = rem / shape.w;
    let i2 = rem % shape.z;
    rem = rem / shape.z;
    let i1 = rem % shape.y;
    let i0 = rem / shape.y;
    let ia = i0 * a_strides.x + i1 * a_strides.y + i2 * a_strides.z + i3 * a_strides.w;
    let ib = i0 * b_strides.x + i1 * b_strides.y + i2 * b_strides.z + i3 * b_strides.w;
    out[idx] = binary_op(a[ia], b[ib]);
}
"""

_UNARY_TEMPLATE = """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;

fn unary_op(v: f32) -> f32 {
    return EXPR;
}

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx < arrayLength(&out)) {
        out[idx] = unary_op(x[idx]);
    }
}
"""

BINARY_EXPRESSIONS = {
    "add": "x + y",
    "subtract": "x - y",
    "multiply": "x * y",
    "divide": "x / y",
    "maximum": "max(x, y)",
}

UNARY_EXPRESSIONS = {
    "neg": "-v",
    "exp": "exp(v)",
    "log": "log(v)",
    "sqrt": "sqrt(v)",
    "abs": "abs(v)",
    "floor": "floor(v)",
    "relu": "max(v, 0.0)",
    "step": "select(0.0, 1.0, v > 0.0)",
    "sigmoid": "1.0 / (1.0 + exp(-v))",
    "tanh": "tanh(v)",
}

WGSL_BINARY = {
    op: _BINARY_TEMPLATE.replace("EXPR", expr) for op, expr in BINARY_EXPRESSIONS.items()
}

WGSL_UNARY = {
    op: _UNARY_TEMPLATE.replace("EXPR", expr) for op, expr in UNARY_EXPRESSIONS.items()
}

WGSL_CLIP = """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> bounds: vec4<f32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx < arrayLength(&out)) {
        out[idx] = clamp(x[idx], bounds.x, bounds.y);
    }
}
"""

WGSL_CLIP_BACKPROP = """
@group(0) @binding(0)
var<storage, read> dy: array<f32>;
@group(0) @binding(1)
var<storage, read> x: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
@group(0) @binding(3)
var<uniform> bounds: vec4<f32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx < arrayLength(&out)) {
        let v = x[idx];
        out[idx] = select(0.0, dy[idx], v >= bounds.x && v <= bounds.y);
    }
}
"""

# ============================================================================
# Reductions
# ============================================================================

_REDUCE_TEMPLATE = """
// Input viewed as [outer, reduce, inner]; one thread per (outer, inner).
// params.x = outer, params.y = reduce, params.z = inner
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: vec4<u32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let outer = params.x;
    let reduce = params.y;
    let inner = params.z;
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= outer * inner) {
        return;
    }
    let base = (idx / inner) * reduce * inner + idx % inner;
    var acc = INIT;
    for (var r = 0u; r < reduce; r = r + 1u) {
        let v = x[base + r * inner];
        COMBINE
    }
    out[idx] = acc;
}
"""

WGSL_SUM = _REDUCE_TEMPLATE.replace("INIT", "0.0").replace("COMBINE", "acc = acc + v;")

WGSL_MAX = _REDUCE_TEMPLATE.replace("INIT", "-3.402823e38").replace(
    "COMBINE", "acc = max(acc, v);"
)

WGSL_ARGMAX = """
// One thread per row; first index of the maximum. params.x = rows, params.y = width
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: vec4<u32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let rows = params.x;
    let width = params.y;
    let row = gid.y * nwg.x * 256u + gid.x;
    if (row >= rows) {
        return;
    }
    let base = row * width;
    var best = x[base];
    var best_idx = 0u;
    for (var i = 1u; i < width; i = i + 1u) {
        let v = x[base + i];
        if (v > best) {
            best = v;
            best_idx = i;
        }
    }
    out[row] = f32(best_idx);
}
"""

# ============================================================================
# Shape
# ============================================================================

WGSL_CONCAT = """
// params.x = outer, params.y = a_dim, params.z = b_dim, params.w = inner
@group(0) @binding(0)
var<storage, read> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
@group(0) @binding(3)
var<uniform> params: vec4<u32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let outer = params.x;
    let a_dim = params.y;
    let b_dim = params.z;
    let inner = params.w;
    let width = a_dim + b_dim;
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= outer * width * inner) {
        return;
    }
    let i = idx % inner;
    let rest = idx / inner;
    let j = rest % width;
    let o = rest / width;
    if (j < a_dim) {
        out[idx] = a[(o * a_dim + j) * inner + i];
    } else {
        out[idx] = b[(o * b_dim + (j - a_dim)) * inner + i];
    }
}
"""

WGSL_SLICE = """
// params[0] = (outer, in_dim, size, inner), params[1].x = begin
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: array<vec4<u32>, 2>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let outer = params[0].x;
    let in_dim = params[0].y;
    let size = params[0].z;
    let inner = params[0].w;
    let begin = params[1].x;
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= outer * size * inner) {
        return;
    }
    let i = idx % inner;
    let rest = idx / inner;
    let j = rest % size;
    let o = rest / size;
    out[idx] = x[(o * in_dim + begin + j) * inner + i];
}
"""

WGSL_PAD = """
// Inverse of WGSL_SLICE. params[0] = (outer, full, size, inner), params[1].x = begin
@group(0) @binding(0)
var<storage, read> dy: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: array<vec4<u32>, 2>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let outer = params[0].x;
    let full = params[0].y;
    let size = params[0].z;
    let inner = params[0].w;
    let begin = params[1].x;
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= outer * full * inner) {
        return;
    }
    let i = idx % inner;
    let rest = idx / inner;
    let j = rest % full;
    let o = rest / full;
    if (j >= begin && j < begin + size) {
        out[idx] = dy[(o * size + (j - begin)) * inner + i];
    } else {
        out[idx] = 0.0;
    }
}
"""

WGSL_TRANSPOSE_2D = """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: vec4<u32>;

@compute @workgroup_size(16, 16)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let rows = params.x;
    let cols = params.y;
    let i = gid.y;
    let j = gid.x;

    if (i < rows && j < cols) {
        out[j * rows + i] = x[i * cols + j];
    }
}
"""

WGSL_ONE_HOT = """
// params.x = n, params.y = depth; values.x = on value, values.y = off value
@group(0) @binding(0)
var<storage, read> indices: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: vec4<u32>;
@group(0) @binding(3)
var<uniform> values: vec4<f32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let n = params.x;
    let depth = params.y;
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= n * depth) {
        return;
    }
    let row = idx / depth;
    let col = idx % depth;
    let hot = i32(round(indices[row]));
    out[idx] = select(values.y, values.x, hot == i32(col));
}
"""

# ============================================================================
# Linear algebra
# ============================================================================

WGSL_MATMUL = """
@group(0) @binding(0)
var<storage, read> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
@group(0) @binding(3)
var<uniform> params: vec4<u32>;

var<workgroup> tile_a: array<f32, 256>;
var<workgroup> tile_b: array<f32, 256>;

@compute @workgroup_size(16, 16)
fn main(
    @builtin(local_invocation_id) lid: vec3<u32>,
    @builtin(workgroup_id) wid: vec3<u32>,
) {
    let m = params.x;
    let n = params.y;
    let k = params.z;
    let lx = lid.x;
    let ly = lid.y;

    let row = wid.y * 16u + ly;
    let col = wid.x * 16u + lx;

    var result = 0.0;

    var tile_idx = 0u;
    loop {
        if (tile_idx >= k) { break; }

        let a_col = tile_idx + lx;
        let a_idx = row * k + a_col;
        tile_a[ly * 16u + lx] = select(0.0, a[a_idx], row < m && a_col < k);

        let b_row = tile_idx + ly;
        let b_idx = b_row * n + col;
        tile_b[ly * 16u + lx] = select(0.0, b[b_idx], b_row < k && col < n);

        workgroupBarrier();

        for (var i = 0u; i < 16u; i = i + 1u) {
            result = result + tile_a[ly * 16u + i] * tile_b[i * 16u + lx];
        }

        workgroupBarrier();
        tile_idx = tile_idx + 16u;
    }

    if (row < m && col < n) {
        out[row * n + col] = result;
    }
}
"""

# ============================================================================
# Softmax & sampling
# ============================================================================

WGSL_SOFTMAX = """
// One workgroup per row. Each thread handles multiple elements if width > 256.
// params.x = width (last dim), params.y = num_rows
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read_write> out: array<f32>;
@group(0) @binding(2)
var<uniform> params: vec4<u32>;

var<workgroup> row_maxes: array<f32, 256>;
var<workgroup> row_sums: array<f32, 256>;

@compute @workgroup_size(256)
fn main(
    @builtin(local_invocation_id) lid: vec3<u32>,
    @builtin(workgroup_id) wid: vec3<u32>,
) {
    let width = params.x;
    let row = wid.x;
    let tid = lid.x;
    let row_offset = row * width;

    var local_max = -3.402823e38;
    var col = tid;
    loop {
        if (col >= width) { break; }
        local_max = max(local_max, x[row_offset + col]);
        col = col + 256u;
    }
    row_maxes[tid] = local_max;
    workgroupBarrier();

    var s = 128u;
    loop {
        if (s == 0u) { break; }
        if (tid < s) {
            row_maxes[tid] = max(row_maxes[tid], row_maxes[tid + s]);
        }
        workgroupBarrier();
        s = s >> 1u;
    }
    let row_max = row_maxes[0];
    workgroupBarrier();

    var local_sum = 0.0;
    col = tid;
    loop {
        if (col >= width) { break; }
        local_sum = local_sum + exp(x[row_offset + col] - row_max);
        col = col + 256u;
    }
    row_sums[tid] = local_sum;
    workgroupBarrier();

    s = 128u;
    loop {
        if (s == 0u) { break; }
        if (tid < s) {
            row_sums[tid] = row_sums[tid] + row_sums[tid + s];
        }
        workgroupBarrier();
        s = s >> 1u;
    }
    let row_sum = row_sums[0];
    workgroupBarrier();

    col = tid;
    loop {
        if (col >= width) { break; }
        out[row_offset + col] = exp(x[row_offset + col] - row_max) / row_sum;
        col = col + 256u;
    }
}
"""

WGSL_MULTINOMIAL = """
// Inverse-CDF sampling, one thread per draw. Negative weights count as 0 and
// each row is renormalised by its total.
// params.x = batch, params.y = k, params.z = num_samples
@group(0) @binding(0)
var<storage, read> probs: array<f32>;
@group(0) @binding(1)
var<storage, read> uniforms: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
@group(0) @binding(3)
var<uniform> params: vec4<u32>;

@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let batch = params.x;
    let k = params.y;
    let num_samples = params.z;
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= batch * num_samples) {
        return;
    }
    let base = (idx / num_samples) * k;
    var total = 0.0;
    for (var i = 0u; i < k; i = i + 1u) {
        total = total + max(probs[base + i], 0.0);
    }
    let r = uniforms[idx] * total;
    var cum = 0.0;
    var chosen = k - 1u;
    for (var i = 0u; i < k; i = i + 1u) {
        cum = cum + max(probs[base + i], 0.0);
        if (r < cum) {
            chosen = i;
            break;
        }
    }
    out[idx] = f32(chosen);
}
"""

# ============================================================================
# Pooling
# ============================================================================

# params[0] = (batch, in_h, in_w, channels)
# params[1] = (out_h, out_w, stride_h, stride_w)
# params[2] = (filter_h, filter_w, pad_top, pad_left)
_WINDOW_PARAMS = """
@group(0) @binding(3)
var<uniform> params: array<vec4<u32>, 3>;

fn x_index(n: u32, r: i32, c: i32, d: u32) -> u32 {
    return ((n * params[0].y + u32(r)) * params[0].z + u32(c)) * params[0].w + d;
}

fn y_index(n: u32, r: u32, c: u32, d: u32) -> u32 {
    return ((n * params[1].x + r) * params[1].y + c) * params[0].w + d;
}

fn in_bounds(r: i32, c: i32) -> bool {
    return r >= 0 && r < i32(params[0].y) && c >= 0 && c < i32(params[0].z);
}

fn corner_row(yr: u32) -> i32 {
    return i32(yr * params[1].z) - i32(params[2].z);
}

fn corner_col(yc: u32) -> i32 {
    return i32(yc * params[1].w) - i32(params[2].w);
}
"""

# Index of the first maximum of window (yr, yc) as wr * filter_w + wc,
# or filter_h * filter_w when the window holds no valid cell.
_WINDOW_ARGMAX = """
fn window_argmax(n: u32, yr: u32, yc: u32, d: u32) -> u32 {
    let fh = params[2].x;
    let fw = params[2].y;
    var best = -3.402823e38;
    var best_k = fh * fw;
    for (var wr = 0u; wr < fh; wr = wr + 1u) {
        for (var wc = 0u; wc < fw; wc = wc + 1u) {
            let r = corner_row(yr) + i32(wr);
            let c = corner_col(yc) + i32(wc);
            if (!in_bounds(r, c)) {
                continue;
            }
            let v = x[x_index(n, r, c, d)];
            if (best_k == fh * fw || v > best) {
                best = v;
                best_k = wr * fw + wc;
            }
        }
    }
    return best_k;
}
"""

_WINDOW_COUNT = """
fn window_count(yr: u32, yc: u32) -> f32 {
    var cnt = 0.0;
    for (var wr = 0u; wr < params[2].x; wr = wr + 1u) {
        for (var wc = 0u; wc < params[2].y; wc = wc + 1u) {
            if (in_bounds(corner_row(yr) + i32(wr), corner_col(yc) + i32(wc))) {
                cnt = cnt + 1.0;
            }
        }
    }
    return max(cnt, 1.0);
}
"""

_POOL_FORWARD_TEMPLATE = """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read> unused: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
""" + _WINDOW_PARAMS + _WINDOW_COUNT + """
@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= arrayLength(&out)) {
        return;
    }
    let channels = params[0].w;
    let d = idx % channels;
    var rest = idx / channels;
    let yc = rest % params[1].y;
    rest = rest / params[1].y;
    let yr = rest % params[1].x;
    let n = rest / params[1].x;

    var acc = INIT;
    for (var wr = 0u; wr < params[2].x; wr = wr + 1u) {
        for (var wc = 0u; wc < params[2].y; wc = wc + 1u) {
            let r = corner_row(yr) + i32(wr);
            let c = corner_col(yc) + i32(wc);
            if (!in_bounds(r, c)) {
                continue;
            }
            let v = x[x_index(n, r, c, d)];
            COMBINE
        }
    }
    out[idx] = RESULT;
}
"""

WGSL_MAX_POOL = (
    _POOL_FORWARD_TEMPLATE
    .replace("INIT", "-3.402823e38")
    .replace("COMBINE", "acc = max(acc, v);")
    .replace("RESULT", "acc")
)

WGSL_AVG_POOL = (
    _POOL_FORWARD_TEMPLATE
    .replace("INIT", "0.0")
    .replace("COMBINE", "acc = acc + v;")
    .replace("RESULT", "acc / window_count(yr, yc)")
)

_POOL_BACKPROP_TEMPLATE = """
// One thread per input cell; gathers from every window that covers it.
@group(0) @binding(0)
var<storage, read> dy: array<f32>;
@group(0) @binding(1)
var<storage, read> x: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
""" + _WINDOW_PARAMS + _WINDOW_ARGMAX + _WINDOW_COUNT + """
@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= arrayLength(&out)) {
        return;
    }
    let channels = params[0].w;
    let d = idx % channels;
    var rest = idx / channels;
    let xc = i32(rest % params[0].z);
    rest = rest / params[0].z;
    let xr = i32(rest % params[0].y);
    let n = rest / params[0].y;

    let stride_h = i32(params[1].z);
    let stride_w = i32(params[1].w);
    var acc = 0.0;
    for (var wr = 0u; wr < params[2].x; wr = wr + 1u) {
        let yr_scaled = xr + i32(params[2].z) - i32(wr);
        if (yr_scaled < 0 || yr_scaled % stride_h != 0) {
            continue;
        }
        let yr = u32(yr_scaled / stride_h);
        if (yr >= params[1].x) {
            continue;
        }
        for (var wc = 0u; wc < params[2].y; wc = wc + 1u) {
            let yc_scaled = xc + i32(params[2].w) - i32(wc);
            if (yc_scaled < 0 || yc_scaled % stride_w != 0) {
                continue;
            }
            let yc = u32(yc_scaled / stride_w);
            if (yc >= params[1].y) {
                continue;
            }
            CONTRIBUTION
        }
    }
    out[idx] = acc;
}
"""

WGSL_MAX_POOL_BACKPROP = _POOL_BACKPROP_TEMPLATE.replace(
    "CONTRIBUTION",
    """if (window_argmax(n, yr, yc, d) == wr * params[2].y + wc) {
                acc = acc + dy[y_index(n, yr, yc, d)];
            }""",
)

WGSL_AVG_POOL_BACKPROP = _POOL_BACKPROP_TEMPLATE.replace(
    "CONTRIBUTION",
    "acc = acc + dy[y_index(n, yr, yc, d)] / window_count(yr, yc);",
)

WGSL_MAX_POOL_GATHER = """
// One thread per window: g at the argmax cell of x.
@group(0) @binding(0)
var<storage, read> g: array<f32>;
@group(0) @binding(1)
var<storage, read> x: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
""" + _WINDOW_PARAMS + _WINDOW_ARGMAX + """
@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= arrayLength(&out)) {
        return;
    }
    let channels = params[0].w;
    let d = idx % channels;
    var rest = idx / channels;
    let yc = rest % params[1].y;
    rest = rest / params[1].y;
    let yr = rest % params[1].x;
    let n = rest / params[1].x;

    let k = window_argmax(n, yr, yc, d);
    let fw = params[2].y;
    if (k >= params[2].x * fw) {
        out[idx] = 0.0;
        return;
    }
    let r = corner_row(yr) + i32(k / fw);
    let c = corner_col(yc) + i32(k % fw);
    out[idx] = g[x_index(n, r, c, d)];
}
"""

# ============================================================================
# Convolution
# ============================================================================

# params[0..2] as for pooling, params[3] = (out_channels, has_bias, 0, 0)
_CONV_PARAMS = """
@group(0) @binding(4)
var<uniform> params: array<vec4<u32>, 4>;

fn in_bounds(r: i32, c: i32) -> bool {
    return r >= 0 && r < i32(params[0].y) && c >= 0 && c < i32(params[0].z);
}
"""

WGSL_CONV2D = """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read> w: array<f32>;
@group(0) @binding(2)
var<storage, read> bias: array<f32>;
@group(0) @binding(3)
var<storage, read_write> out: array<f32>;
""" + _CONV_PARAMS + """
@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= arrayLength(&out)) {
        return;
    }
    let in_h = params[0].y;
    let in_w = params[0].z;
    let in_c = params[0].w;
    let out_h = params[1].x;
    let out_w = params[1].y;
    let fh = params[2].x;
    let fw = params[2].y;
    let out_c = params[3].x;

    let d2 = idx % out_c;
    var rest = idx / out_c;
    let yc = rest % out_w;
    rest = rest / out_w;
    let yr = rest % out_h;
    let n = rest / out_h;

    let r0 = i32(yr * params[1].z) - i32(params[2].z);
    let c0 = i32(yc * params[1].w) - i32(params[2].w);
    var acc = 0.0;
    for (var wr = 0u; wr < fh; wr = wr + 1u) {
        for (var wc = 0u; wc < fw; wc = wc + 1u) {
            let r = r0 + i32(wr);
            let c = c0 + i32(wc);
            if (!in_bounds(r, c)) {
                continue;
            }
            let x_base = ((n * in_h + u32(r)) * in_w + u32(c)) * in_c;
            let w_base = (wr * fw + wc) * in_c;
            for (var d1 = 0u; d1 < in_c; d1 = d1 + 1u) {
                acc = acc + x[x_base + d1] * w[(w_base + d1) * out_c + d2];
            }
        }
    }
    if (params[3].y != 0u) {
        acc = acc + bias[d2];
    }
    out[idx] = acc;
}
"""

WGSL_CONV2D_DER_INPUT = """
@group(0) @binding(0)
var<storage, read> dy: array<f32>;
@group(0) @binding(1)
var<storage, read> w: array<f32>;
@group(0) @binding(2)
var<storage, read> unused: array<f32>;
@group(0) @binding(3)
var<storage, read_write> out: array<f32>;
""" + _CONV_PARAMS + """
@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= arrayLength(&out)) {
        return;
    }
    let in_h = params[0].y;
    let in_w = params[0].z;
    let in_c = params[0].w;
    let out_h = params[1].x;
    let out_w = params[1].y;
    let stride_h = i32(params[1].z);
    let stride_w = i32(params[1].w);
    let fh = params[2].x;
    let fw = params[2].y;
    let out_c = params[3].x;

    let d1 = idx % in_c;
    var rest = idx / in_c;
    let xc = i32(rest % in_w);
    rest = rest / in_w;
    let xr = i32(rest % in_h);
    let n = rest / in_h;

    var acc = 0.0;
    for (var wr = 0u; wr < fh; wr = wr + 1u) {
        let yr_scaled = xr + i32(params[2].z) - i32(wr);
        if (yr_scaled < 0 || yr_scaled % stride_h != 0) {
            continue;
        }
        let yr = u32(yr_scaled / stride_h);
        if (yr >= out_h) {
            continue;
        }
        for (var wc = 0u; wc < fw; wc = wc + 1u) {
            let yc_scaled = xc + i32(params[2].w) - i32(wc);
            if (yc_scaled < 0 || yc_scaled % stride_w != 0) {
                continue;
            }
            let yc = u32(yc_scaled / stride_w);
            if (yc >= out_w) {
                continue;
            }
            let dy_base = ((n * out_h + yr) * out_w + yc) * out_c;
            let w_base = ((wr * fw + wc) * in_c + d1) * out_c;
            for (var d2 = 0u; d2 < out_c; d2 = d2 + 1u) {
                acc = acc + dy[dy_base + d2] * w[w_base + d2];
            }
        }
    }
    out[idx] = acc;
}
"""

WGSL_CONV2D_DER_FILTER = """
@group(0) @binding(0)
var<storage, read> x: array<f32>;
@group(0) @binding(1)
var<storage, read> dy: array<f32>;
@group(0) @binding(2)
var<storage, read> unused: array<f32>;
@group(0) @binding(3)
var<storage, read_write> out: array<f32>;
""" + _CONV_PARAMS + """
@compute @workgroup_size(256)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(num_workgroups) nwg: vec3<u32>,
) {
    let idx = gid.y * nwg.x * 256u + gid.x;
    if (idx >= arrayLength(&out)) {
        return;
    }
    let batch = params[0].x;
    let in_h = params[0].y;
    let in_w = params[0].z;
    let in_c = params[0].w;
    let out_h = params[1].x;
    let out_w = params[1].y;
    let fw = params[2].y;
    let out_c = params[3].x;

    let d2 = idx % out_c;
    var rest = idx / out_c;
    let d1 = rest % in_c;
    rest = rest / in_c;
    let wc = rest % fw;
    let wr = rest / fw;

    var acc = 0.0;
    for (var n = 0u; n < batch; n = n + 1u) {
        for (var yr = 0u; yr < out_h; yr = yr + 1u) {
            let r = i32(yr * params[1].z) - i32(params[2].z) + i32(wr);
            for (var yc = 0u; yc < out_w; yc = yc + 1u) {
                let c = i32(yc * params[1].w) - i32(params[2].w) + i32(wc);
                if (!in_bounds(r, c)) {
                    continue;
                }
                let xv = x[((n * in_h + u32(r)) * in_w + u32(c)) * in_c + d1];
                acc = acc + xv * dy[((n * out_h + yr) * out_w + yc) * out_c + d2];
            }
        }
    }
    out[idx] = acc;
}
"""
