"""EmbryoLens: embryo stage classification with model-quality reporting."""
