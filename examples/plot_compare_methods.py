"""
Comparing variance-stabilizing methods
======================================

In this example, we show how to normalize and variance-stabilize single-cell UMI
counts with pysctransform, and how to compare the per-gene fitting methods on the
same data.

.. contents:: Contents
    :local:
    :depth: 3

We start by importing required packages and setting up an optional path to save results.

"""

# %%

import os
import pickle as pkl

import numpy as np
import pandas as pd

from pysctransform import VST
from pysctransform import compare_methods
from pysctransform import gene_attr_table
from pysctransform import timing_table
from pysctransform.default_inference import DefaultInference

SAVE = False  # whether to save the outputs of this notebook

if SAVE:
    # Replace this with the path to directory where you would like results to be saved
    OUTPUT_PATH = "../output_files/synthetic_example"
    os.makedirs(OUTPUT_PATH, exist_ok=True)  # Create path if it doesn't exist

# %%
# Data simulation
# ---------------
#
# pysctransform takes a raw count matrix of shape 'number of genes' x
# 'number of cells', containing UMI counts (non-negative integers). It may be a
# numpy array, a `pandas dataframe
# <https://pandas.pydata.org/docs/reference/api/pandas.DataFrame.html>`_, a scipy
# sparse matrix, or an AnnData object (cells x genes, as usual for AnnData).
#
# To illustrate the required data format, we simulate negative binomial counts whose
# expected values are proportional to the sequencing depth of each cell.
# You may replace them with your own dataset.

rng = np.random.default_rng(0)
n_genes, n_cells = 500, 1000

log_depth = rng.normal(3.5, 0.25, n_cells)
log_gene_mean = rng.uniform(-2, 1.5, n_genes)
mu = 10 ** (log_gene_mean[:, None] + log_depth[None, :] - log_depth.mean())
theta = 10 ** (0.5 * log_gene_mean + 1.2)
counts = rng.negative_binomial(theta[:, None], theta[:, None] / (theta[:, None] + mu))

counts_df = pd.DataFrame(
    counts,
    index=[f"gene{i}" for i in range(n_genes)],
    columns=[f"cell{j}" for j in range(n_cells)],
)
print(counts_df)

# %%
# Running one method
# ------------------
#
# .. currentmodule:: pysctransform
#
# A :class:`VST <vst.VST>` object validates the count matrix once and computes the
# per-cell latent covariate, by default the ``log10`` of the total count of each cell.
# Its :meth:`run() <vst.VST.run>` method fits one model per gene, regularizes the
# model parameters against the gene mean, and computes the residuals.

inference = DefaultInference(n_cpus=8)
runner = VST(counts_df, inference=inference)

res = runner.run("poisson", return_residuals=True)

# %%
# The raw and regularized parameters of each gene are stored in
# ``res.raw_params`` and ``res.regularized_params``.

print(res.regularized_params)

# %%
# Per-gene summaries, including the mean and the variance of the residuals, are
# stored in ``res.gene_attr``. Genes whose residual variance is well above 1 are
# the most variable genes.

print(res.gene_attr.sort_values("residual_variance", ascending=False).head(10))

# %%
# The residuals themselves are a genes x cells dataframe.

print(res.residuals)

if SAVE:
    with open(os.path.join(OUTPUT_PATH, "result_poisson.pkl"), "wb") as f:
        pkl.dump(res, f)

# %%
# Comparing methods
# -----------------
#
# :func:`compare_methods <vst.compare_methods>` runs several methods on the same
# validated count matrix. The offset methods skip the per-gene regressions and are
# much faster.

results = compare_methods(
    counts_df, methods=["poisson", "nb_fast", "glmGamPoi", "offset"], n_cpus=8
)

# %%
# Run times of the model fitting, regularization and residual phases:

print(timing_table(results))

# %%
# Per-gene attributes of all runs, indexed by method and gene:

gene_attr = gene_attr_table(results)
print(gene_attr.groupby(level="method")["residual_variance"].describe())

if SAVE:
    with open(os.path.join(OUTPUT_PATH, "gene_attr.pkl"), "wb") as f:
        pkl.dump(gene_attr, f)
