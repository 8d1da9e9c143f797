"""
Streamlit application for skin photo diagnosis.
"""

import logging
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

import streamlit as st
import json
from dataclasses import replace

import plotly.graph_objects as go

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from skin_diagnosis.config import COLORS, DiagnosisConfig
from skin_diagnosis.core.calibration import CalibrationTable
from skin_diagnosis.core.issue_detectors import compute_region_boxes
from skin_diagnosis.core.models import AnalysisResult, ModulesResult
from skin_diagnosis.core.pipeline import SkinDiagnosisPipeline
from skin_diagnosis.utils.image_utils import bgr_to_rgb, encode_image_to_bytes, rgb_to_bgr
from skin_diagnosis.utils.visualization import (
    create_comparison_image,
    create_debug_visualization,
    draw_module_masks,
)

logging.basicConfig(
    level=os.environ.get("DIAG_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def main():
    st.set_page_config(
        page_title="Skin Photo Diagnosis",
        page_icon="🔬",
        layout="wide",
    )

    st.title("Skin Photo Diagnosis")
    st.markdown("Grade photo quality, score skin issues and map them onto facial modules")

    # Sidebar configuration
    pipeline, language = create_sidebar_config()

    uploaded_file = st.file_uploader(
        "Upload a face photo",
        type=["jpg", "jpeg", "png", "webp"],
        help="A front-facing photo in daylight works best",
    )

    if uploaded_file:
        st.image(uploaded_file, caption=uploaded_file.name[:30], width=200)
        uploaded_file.seek(0)

        if st.button("🔍 Analyze", type="primary"):
            process_image(uploaded_file, pipeline, language)


def create_sidebar_config() -> tuple[SkinDiagnosisPipeline, str]:
    """Create sidebar controls and build the pipeline they describe."""
    st.sidebar.header("Diagnosis Settings")

    language = st.sidebar.radio("Language", ["EN", "CN"], horizontal=True)

    base = DiagnosisConfig.from_env()

    st.sidebar.subheader("Quality Gate (degraded below)")
    blur = st.sidebar.slider("Blur factor", 0.0, 1.0, base.quality.degraded.min_blur_factor, 0.05)
    exposure = st.sidebar.slider("Exposure factor", 0.0, 1.0, base.quality.degraded.min_exposure_factor, 0.05)
    wb = st.sidebar.slider("White balance factor", 0.0, 1.0, base.quality.degraded.min_wb_factor, 0.05)

    st.sidebar.subheader("Module Masks")
    margin = st.sidebar.slider("Face crop margin", 1.0, 2.0, base.modules.face_crop_margin, 0.05)

    quality = base.quality.with_overrides({
        "degraded": {"min_blur_factor": blur, "min_exposure_factor": exposure, "min_wb_factor": wb},
    })
    config = replace(
        base,
        default_language=language,
        quality=quality,
        modules=replace(base.modules, face_crop_margin=margin),
    )

    calibration = None
    if config.calibration_path:
        try:
            calibration = CalibrationTable.from_file(config.calibration_path)
        except (OSError, ValueError) as e:
            st.sidebar.warning(f"Calibration file not loaded: {e}")

    return SkinDiagnosisPipeline(config, calibration), language


def process_image(uploaded_file, pipeline: SkinDiagnosisPipeline, language: str):
    """Run the pipeline on one upload and display results."""
    with st.spinner(f"Analyzing {uploaded_file.name}..."):
        image_bytes = uploaded_file.read()
        logger.info("Analyzing upload %s (%d bytes)", uploaded_file.name, len(image_bytes))
        result = pipeline.analyze(image_bytes, language=language)

    if not result.ok:
        st.error(f"Analysis stopped: {result.reason}")
        return

    modules = pipeline.build_modules(result, language=language)
    display_results(result, modules)


def display_results(result: AnalysisResult, modules: ModulesResult | None):
    """Display quality, issues, findings and module overlays."""
    quality = result.quality

    st.header("Photo Quality")
    cols = st.columns(4)
    with cols[0]:
        st.metric("Grade", quality.grade.value)
    with cols[1]:
        st.metric("Quality Factor", f"{quality.quality_factor:.2f}")
    with cols[2]:
        st.metric("Skin Coverage", f"{quality.metrics['skin_coverage'] * 100:.1f}%")
    with cols[3]:
        st.metric("Processing", f"{result.processing_time_ms:.0f} ms")
    if quality.reasons:
        st.caption("Reasons: " + ", ".join(quality.reasons))

    st.header("Issues")
    st.plotly_chart(create_issue_chart(result), use_container_width=True)
    for issue in result.issues:
        with st.expander(f"{issue.issue_type}: {issue.severity.value} ({issue.confidence_label} confidence)"):
            for sentence in issue.evidence.text:
                st.markdown(f"- {sentence}")
            st.json(issue.evidence.metrics)

    if result.takeaways:
        st.header("Takeaways")
        for takeaway in result.takeaways:
            st.markdown(f"- {takeaway.text}")

    st.header("Visualization")
    image_bgr = rgb_to_bgr(result.image)
    boxes = compute_region_boxes(result.skin.bbox)
    debug_img = create_debug_visualization(image_bgr, result.skin, boxes)
    if modules is not None:
        annotated = draw_module_masks(image_bgr, modules)
        comparison = create_comparison_image(debug_img, annotated)
    else:
        st.info("Module overlay is only shown for photos that pass the quality gate")
        comparison = debug_img
    comparison_rgb = bgr_to_rgb(comparison)
    st.image(comparison_rgb, caption="Skin ROI (left) and module masks (right)", width="stretch")
    st.download_button(
        label="📥 Download Overlay",
        data=encode_image_to_bytes(comparison_rgb),
        file_name="skin_diagnosis_overlay.png",
        mime="image/png",
    )

    if modules is not None:
        st.subheader("Modules")
        table_data = []
        for module in modules.modules:
            top = module.issues[0] if module.issues else None
            table_data.append({
                "Module": module.label,
                "Top Issue": top.issue_type if top else "-",
                "Severity (0-4)": top.severity_0_4 if top else 0,
                "Pixels": module.positive_pixels,
                "Mask Source": module.mask_source,
            })
        st.dataframe(table_data, use_container_width=True)

    # Download section
    st.header("Export Results")
    payload = result.to_dict()
    if modules is not None:
        payload["modules"] = modules.to_dict()
    st.download_button(
        label="📥 Download JSON Report",
        data=json.dumps(payload, indent=2, ensure_ascii=False),
        file_name="skin_diagnosis.json",
        mime="application/json",
    )


def create_issue_chart(result: AnalysisResult) -> go.Figure:
    """Bar chart of severity score and confidence per issue."""
    names = [issue.issue_type for issue in result.issues]
    fig = go.Figure()
    fig.add_trace(go.Bar(
        name="Severity score",
        x=names,
        y=[issue.severity_score for issue in result.issues],
        marker_color=[_rgb_hex(COLORS.get(_display_key(name), (128, 128, 128))) for name in names],
    ))
    fig.add_trace(go.Bar(
        name="Confidence",
        x=names,
        y=[issue.confidence for issue in result.issues],
        marker_color="rgba(120, 120, 120, 0.6)",
    ))
    fig.update_layout(barmode="group", yaxis_range=[0, 1], height=320, margin=dict(t=20, b=20))
    return fig


def _display_key(issue_type: str) -> str:
    return {"pores": "texture", "dark_spots": "tone"}.get(issue_type, issue_type)


def _rgb_hex(bgr: tuple[int, int, int]) -> str:
    b, g, r = bgr
    return f"#{r:02x}{g:02x}{b:02x}"


if __name__ == "__main__":
    main()
