from automode.state.feature_store import FeatureStore

__all__ = ["FeatureStore"]
