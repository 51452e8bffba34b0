"""Predefined lab designs that load without calling the oracle."""
from __future__ import annotations

from typing import Any

from labtree.core.errors import LabLoadError
from labtree.core.model import LabNode
from labtree.core.validate.validate_tree import validate_tree


def _n(
    id: str,
    name: str,
    kind: str,
    description: str,
    specs: dict[str, str] | None = None,
    children: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    node: dict[str, Any] = {
        "id": id,
        "name": name,
        "kind": kind,
        "description": description,
        "specs": specs or {},
        "in_inventory": True,
    }
    if children:
        node["children"] = children
    return node


HTS_TREE = _n(
    "hts-root", "Ultra-HTS Pharma Screening System", "root",
    "Industrial screening platform for 1536-well assays, about 1M compounds per week.",
    {"throughput": "1200 plates/day", "footprint": "5m x 3m"},
    [
        _n("hts-logistics", "Central Logistics Hub", "required", "Core transport infrastructure.",
           {"vendor": "HighRes", "model": "MicroDock"}, [
               _n("hts-robot", "6-Axis Industrial Robot", "required", "Long-reach arm on linear rail.",
                  {"vendor": "Fanuc", "model": "M-10iD/12"}, [
                      _n("hts-gripper", "Servo Gripper", "required", "Smart gripper with force feedback.",
                         {"vendor": "Schunk", "model": "EGL 90"}),
                      _n("hts-rail", "7m Linear Track", "required", "Extends robot reach across all modules.",
                         {"vendor": "Gudel", "model": "TMF-1"}),
                  ]),
               _n("hts-hotel", "Ambient Plate Hotel x4", "required", "High capacity buffer storage.",
                  {"capacity": "800 plates"}),
           ]),
        _n("hts-liquids", "Compound Management", "required", "Precise liquid handling zone.", None, [
            _n("hts-echo", "Acoustic Dispenser", "required", "Nanoliter transfer without tips.",
               {"vendor": "Labcyte", "model": "Echo 655T"}, [
                   _n("hts-chiller", "Recirculating Chiller", "required", "Maintains transducer temperature.",
                      {"vendor": "Thermo", "model": "Accel 250"}),
                   _n("hts-surge", "Surge Tank", "compatible", "Buffer for coupling fluid."),
               ]),
            _n("hts-peeler", "Plate Peeler", "required", "Removes seals from source plates.",
               {"vendor": "Brooks", "model": "XPeel"}),
        ]),
        _n("hts-detection", "Detection & Imaging", "required", "Data readout.", None, [
            _n("hts-reader", "Multimode Reader", "required", "Fluorescence, luminescence, absorbance.",
               {"vendor": "BMG Labtech", "model": "PHERAstar FSX"}),
            _n("hts-imager", "High Content Imager", "compatible", "Confocal automated microscopy.",
               {"vendor": "PerkinElmer", "model": "Opera Phenix"}),
        ]),
        _n("hts-brain", "Control System", "required", "Scheduling and power backbone.", None, [
            _n("hts-scheduler", "Master Scheduler PC", "required", "Runs the scheduling software.",
               {"vendor": "Dell", "model": "Precision Rack"}),
            _n("hts-ups", "3-Phase UPS", "required", "Uninterruptible power supply.",
               {"capacity": "10kVA"}),
        ]),
    ],
)


NGS_TREE = _n(
    "ngs-root", "NGS Library Prep Factory", "root",
    "Genomic sequencing preparation pipeline from extraction to library normalization.",
    {"throughput": "384 samples/run"},
    [
        _n("ngs-liquid", "Hamilton STARlet", "required", "Primary liquid handling platform.", None, [
            _n("ngs-channels", "8-Channel Pipetting Head", "required", "Independent channels for cherry picking."),
            _n("ngs-odtc", "On-Deck Thermal Cycler", "required", "For PCR amplification.",
               {"vendor": "Inheco", "model": "ODTC"}),
            _n("ngs-magnet", "Magnetic Bead Separator", "required", "For SPRI bead cleanups.",
               {"vendor": "Alpaqua", "model": "Magnum FLX"}),
        ]),
        _n("ngs-qc", "QC Station", "required", "Quality control of libraries.", None, [
            _n("ngs-fragment", "Fragment Analyzer", "required", "Automated electrophoresis.",
               {"vendor": "Agilent", "model": "TapeStation 4200"}),
            _n("ngs-qubit", "Fluorometer", "compatible", "Rapid quantification."),
        ]),
        _n("ngs-waste", "Waste Management", "required", "Handling biohazardous waste."),
    ],
)


SYNBIO_TREE = _n(
    "syn-root", "Synthetic Biology Foundry", "root",
    "Design-build-test loop for strain engineering with automated cloning and screening.",
    {"throughput": "10k constructs/month"},
    [
        _n("syn-dna", "DNA Assembly Workcell", "required", "Automated Golden Gate and Gibson assembly.", None, [
            _n("syn-echo", "Acoustic Liquid Handler", "required", "Low-volume reagent transfers.",
               {"vendor": "Beckman", "model": "Echo 525"}),
            _n("syn-cycler", "Thermal Cycler Bank", "required", "Parallel assembly reactions.",
               {"vendor": "Bio-Rad", "model": "C1000"}),
        ]),
        _n("syn-transform", "Transformation Station", "required", "Heat-shock and plating of competent cells."),
        _n("syn-picker", "Colony Picker", "compatible", "Imaging-based colony selection.",
           {"vendor": "Molecular Devices", "model": "QPix 460"}),
    ],
)


DEMO_SCENARIOS: dict[str, tuple[str, dict[str, Any]]] = {
    "hts": ("Ultra-HTS Pharma", HTS_TREE),
    "ngs": ("NGS Genomics", NGS_TREE),
    "synbio": ("SynBio Foundry", SYNBIO_TREE),
}


def load_demo(name: str) -> LabNode:
    if name not in DEMO_SCENARIOS:
        raise LabLoadError(
            code="E_UNKNOWN_DEMO",
            message=f"unknown demo: {name} (choose one of: {', '.join(sorted(DEMO_SCENARIOS))})",
            path="demo",
        )
    tree, errors = validate_tree(DEMO_SCENARIOS[name][1])
    if errors or tree is None:  # pragma: no cover
        raise errors[0]
    return tree
