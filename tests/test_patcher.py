"""Tests for applying run parameters to a template."""
import copy

import pytest

from muse_runner.core import settings
from muse_runner.core.errors import TemplateNodeMissing
from muse_runner.core.patcher import (
    MAX_LORA_SLOTS,
    LoraEntry,
    PatchParams,
    RunMode,
    SamplerOverrides,
    patch_workflow,
    update_lora_stack,
)
from muse_runner.core.templates import read_workflow_template


@pytest.fixture
def text2i():
    return read_workflow_template(settings.get_settings().text2i_template_path)


@pytest.fixture
def image2i():
    return read_workflow_template(settings.get_settings().image2i_template_path)


def _params(**overrides) -> PatchParams:
    values = dict(
        mode=RunMode.primary,
        positive="a cat",
        negative="blurry",
        ckpt_name="model.safetensors",
        width=1024,
        height=768,
    )
    values.update(overrides)
    return PatchParams(**values)


def test_patch_primary_loader(text2i):
    workflow = patch_workflow(text2i, _params())
    loader = workflow["91"]["inputs"]
    assert loader["ckpt_name"] == "model.safetensors"
    assert loader["positive"] == "a cat"
    assert loader["negative"] == "blurry"
    assert loader["empty_latent_width"] == 1024
    assert loader["empty_latent_height"] == 768


def test_patch_does_not_mutate_template(text2i):
    original = copy.deepcopy(text2i)
    patch_workflow(text2i, _params(loras=[LoraEntry("x.safetensors")], controlnet_enabled=True,
                                   controlnet_model="m.pth", controlnet_strength=0.7))
    assert text2i == original


def test_patch_refine_uses_refine_loader(image2i):
    workflow = patch_workflow(image2i, _params(mode=RunMode.refine, init_image_name="init_images/a.png"))
    loader = workflow["122"]["inputs"]
    assert loader["ckpt_name"] == "model.safetensors"
    # refine keeps the template latent size
    assert loader["empty_latent_width"] == 832
    assert workflow["117"]["inputs"]["image"] == "init_images/a.png"


def test_lora_stack_writes_every_slot():
    inputs = {"lora_count": 3, "lora_name_1": "old.safetensors", "lora_wt_1": 0.3}
    update_lora_stack(inputs, [
        LoraEntry("a.safetensors", 0.5),
        LoraEntry("skip.safetensors", 0.9, enabled=False),
        LoraEntry("  ", 1.0),
    ])

    assert inputs["lora_count"] == 3
    assert inputs["lora_name_1"] == "a.safetensors"
    assert inputs["lora_wt_1"] == 0.5
    for i in range(2, MAX_LORA_SLOTS + 1):
        assert inputs[f"lora_name_{i}"] == "None"
        assert inputs[f"lora_wt_{i}"] == 1


def test_lora_count_grows_to_enabled_and_caps():
    inputs = {"lora_count": 1}
    update_lora_stack(inputs, [LoraEntry(f"l{i}.safetensors") for i in range(60)])
    assert inputs["lora_count"] == MAX_LORA_SLOTS
    assert inputs[f"lora_name_{MAX_LORA_SLOTS}"] == f"l{MAX_LORA_SLOTS - 1}.safetensors"


def test_lora_count_left_alone_when_zero():
    inputs = {}
    update_lora_stack(inputs, [])
    assert "lora_count" not in inputs
    assert inputs["lora_name_1"] == "None"


def test_disabled_controlnet_forces_zero_strength(text2i):
    workflow = patch_workflow(text2i, _params(
        controlnet_enabled=False,
        controlnet_strength=1.5,
        controlnet_model="other.pth",
        controlnet_image_name="control_images/x.png",
    ))
    assert workflow["104"]["inputs"]["strength"] == 0
    assert workflow["83"]["inputs"]["control_net_name"] == "control_v11p_sd15_canny.pth"
    assert workflow["114"]["inputs"]["image"] == "control_images/placeholder.png"


def test_enabled_controlnet(text2i):
    workflow = patch_workflow(text2i, _params(
        controlnet_enabled=True,
        controlnet_model="depth.pth",
        preprocessor_enabled=True,
        preprocessor="DepthAnythingPreprocessor",
        controlnet_strength=0.8,
        controlnet_image_name="control_images/c.png",
    ))
    assert workflow["83"]["inputs"]["control_net_name"] == "depth.pth"
    assert workflow["112"]["inputs"]["preprocessor"] == "DepthAnythingPreprocessor"
    assert workflow["104"]["inputs"]["strength"] == 0.8
    assert workflow["114"]["inputs"]["image"] == "control_images/c.png"


def test_preprocessor_untouched_when_subtoggle_off(text2i):
    workflow = patch_workflow(text2i, _params(
        controlnet_enabled=True,
        controlnet_model="depth.pth",
        preprocessor_enabled=False,
        preprocessor="DepthAnythingPreprocessor",
    ))
    assert workflow["112"]["inputs"]["preprocessor"] == "CannyEdgePreprocessor"


def test_sampler_overrides(text2i):
    workflow = patch_workflow(text2i, _params(ksampler=SamplerOverrides(
        steps=12, cfg=4.0, sampler="euler", scheduler="normal", seed=42, denoise=0.3,
    )))
    sampler = workflow["3"]["inputs"]
    assert sampler["steps"] == 12
    assert sampler["cfg"] == 4.0
    assert sampler["sampler_name"] == "euler"
    assert sampler["scheduler"] == "normal"
    assert sampler["seed"] == 42
    # denoise only applies to refine runs
    assert sampler["denoise"] == 1


def test_sampler_name_wins_over_alias(image2i):
    workflow = patch_workflow(image2i, _params(
        mode=RunMode.refine,
        ksampler=SamplerOverrides(sampler="euler", sampler_name="dpmpp_sde", denoise=0.4),
    ))
    assert workflow["3"]["inputs"]["sampler_name"] == "dpmpp_sde"
    assert workflow["3"]["inputs"]["denoise"] == 0.4


def test_missing_node_raises(text2i):
    del text2i["92"]
    with pytest.raises(TemplateNodeMissing) as exc_info:
        patch_workflow(text2i, _params())
    assert exc_info.value.node_id == "92"
