from cvt_zsl.analysis.attention import AttentionAnalyzer

__all__ = ["AttentionAnalyzer"]
