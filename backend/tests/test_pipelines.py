import pytest

from reelpipe.pipeline.ai_generate import clamp_scene_count
from reelpipe.services.pipelines import image_progress, pipeline_for, render_progress


def test_ai_generate_plan():
    plan = pipeline_for("ai_generate")
    assert plan.steps == ("script_generation", "voice_generation", "image_generation", "merge", "publishing")
    assert plan.step_order("merge") == 4
    assert plan.generation_steps() == ["script_generation", "voice_generation", "image_generation"]
    assert plan.staged_progress == 72


def test_merge_plan_has_no_generation_steps():
    plan = pipeline_for("merge")
    assert plan.generation_steps() == []
    assert plan.step_order("publishing") == 2


def test_unknown_job_type_is_rejected():
    with pytest.raises(ValueError):
        pipeline_for("slideshow")


def test_render_progress_stays_in_band():
    assert render_progress(0) == 75
    assert render_progress(50) == 82
    assert render_progress(100) == 89
    assert render_progress(250) == 89


def test_image_progress():
    assert image_progress(0, 5) == 40
    assert image_progress(5, 10) == 55
    assert image_progress(10, 10) == 70


def test_clamp_scene_count():
    assert clamp_scene_count(None) == 3
    assert clamp_scene_count("abc") == 3
    assert clamp_scene_count(0) == 1
    assert clamp_scene_count(500) == 20
    assert clamp_scene_count(7) == 7
