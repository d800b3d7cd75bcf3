#!/usr/bin/env python3
"""
Command-line script for registering a pair of images.

image1 is the moving image and image2 the template; the estimated
transform maps image2 space onto image1 space.

Example usage:
    python register_pair.py moving.nii.gz template.nii.gz \\
        --type rigid_affine_syn \\
        --transformed moving_in_template.nii.gz \\
        --affine affine.txt \\
        --syn-warp warps.nii.gz
"""

import argparse
from pathlib import Path
import sys

from mrreg.core import MRReg, RegistrationConfig, RegistrationError
from mrreg.core.config import REGISTRATION_TYPES, INIT_TYPES, LINEAR_METRICS, ROBUST_ESTIMATORS
from mrreg.io import load_volume, load_mask, save_volume, save_transform, save_warps


def _floats(text):
    return tuple(float(v) for v in text.split(','))


def _ints(text):
    return tuple(int(v) for v in text.split(','))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='mrreg: register a pair of 3D / 4D images (rigid, affine and SyN)',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument('image1', help='Moving image')
    parser.add_argument('image2', help='Template image')
    parser.add_argument('--type', choices=REGISTRATION_TYPES,
                        help='Registration stages to run (default: affine_syn)')

    # Outputs
    parser.add_argument('--transformed', help='image1 resampled into image2 space')
    parser.add_argument('--transformed-midway', nargs=2, metavar=('IMAGE1', 'IMAGE2'),
                        help='Both images resampled into the midway space')
    parser.add_argument('--mask1', help='Mask restricting image1 voxels')
    parser.add_argument('--mask2', help='Mask restricting image2 voxels')

    # Rigid
    parser.add_argument('--rigid', help='Output rigid transform')
    parser.add_argument('--rigid-init', help='Initial rigid transform (text file)')
    parser.add_argument('--rigid-centre', choices=INIT_TYPES, help='Rigid initialisation')
    parser.add_argument('--rigid-scale', type=_floats, help='Rigid scale factors, coarsest first')
    parser.add_argument('--rigid-niter', type=_ints, help='Rigid iterations per level')
    parser.add_argument('--rigid-metric', choices=LINEAR_METRICS, help='Rigid metric')
    parser.add_argument('--rigid-global-search', action='store_true', default=None,
                        help='Global search for the rigid starting point')

    # Affine
    parser.add_argument('--affine', help='Output affine transform')
    parser.add_argument('--affine-1tomidway', help='Output transform from image1 to the midway space')
    parser.add_argument('--affine-2tomidway', help='Output transform from image2 to the midway space')
    parser.add_argument('--affine-init', help='Initial affine transform (text file)')
    parser.add_argument('--affine-centre', choices=INIT_TYPES, help='Affine initialisation')
    parser.add_argument('--affine-scale', type=_floats, help='Affine scale factors, coarsest first')
    parser.add_argument('--affine-niter', type=_ints, help='Affine iterations per level')
    parser.add_argument('--affine-metric', choices=LINEAR_METRICS, help='Affine metric')
    parser.add_argument('--affine-robust-estimator', choices=ROBUST_ESTIMATORS,
                        help='Robust estimator for the affine difference metric')
    parser.add_argument('--affine-global-search', action='store_true', default=None,
                        help='Global search for the affine starting point')

    # SyN
    parser.add_argument('--syn-warp', help='Output 5D warp file')
    parser.add_argument('--syn-init', help='Initialise from a previously saved 5D warp file')
    parser.add_argument('--syn-scale', type=_floats, help='SyN scale factors, coarsest first')
    parser.add_argument('--syn-niter', type=_ints, help='SyN iterations per level')
    parser.add_argument('--syn-metric', choices=LINEAR_METRICS, help='SyN metric')
    parser.add_argument('--syn-update-smooth', type=float, help='Update field smoothing (voxels)')
    parser.add_argument('--syn-disp-smooth', type=float, help='Displacement field smoothing (voxels)')
    parser.add_argument('--syn-grad-step', type=float, help='Gradient step (voxels)')

    # FOD
    parser.add_argument('--lmax', type=int, help='Band limit used for FOD registration')
    parser.add_argument('--directions', help='Direction file for FOD reorientation')
    parser.add_argument('--noreorientation', action='store_true',
                        help='Disable FOD reorientation')

    # Global
    parser.add_argument('--config', help='Path to YAML configuration file')
    parser.add_argument('--nthreads', type=int, help='Number of worker threads')
    parser.add_argument('--quiet', action='store_true', help='Suppress output')

    return parser


def apply_overrides(config: RegistrationConfig, args: argparse.Namespace) -> RegistrationConfig:
    """Copy command-line options that were given onto the configuration."""
    overrides = [
        ('rigid', 'init_transform', args.rigid_init),
        ('rigid', 'init', args.rigid_centre),
        ('rigid', 'scale_factors', args.rigid_scale),
        ('rigid', 'max_iter', args.rigid_niter),
        ('rigid', 'metric', args.rigid_metric),
        ('rigid', 'global_search', args.rigid_global_search),
        ('affine', 'init_transform', args.affine_init),
        ('affine', 'init', args.affine_centre),
        ('affine', 'scale_factors', args.affine_scale),
        ('affine', 'max_iter', args.affine_niter),
        ('affine', 'metric', args.affine_metric),
        ('affine', 'robust_estimator', args.affine_robust_estimator),
        ('affine', 'global_search', args.affine_global_search),
        ('syn', 'init_warp', args.syn_init),
        ('syn', 'scale_factors', args.syn_scale),
        ('syn', 'max_iter', args.syn_niter),
        ('syn', 'metric', args.syn_metric),
        ('syn', 'update_smoothing', args.syn_update_smooth),
        ('syn', 'disp_smoothing', args.syn_disp_smooth),
        ('syn', 'grad_step', args.syn_grad_step),
        ('fod', 'lmax', args.lmax),
        ('fod', 'directions', args.directions),
    ]
    for stage, name, value in overrides:
        if value is not None:
            setattr(getattr(config, stage), name, value)

    if args.type is not None:
        config.type = args.type
    if args.noreorientation:
        config.fod.reorientation = False
    if args.nthreads is not None:
        config.n_threads = args.nthreads
    if args.quiet:
        config.verbose = False
    return config


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load configuration
    if args.config is not None:
        if not Path(args.config).exists():
            parser.error(f"config file {args.config} not found")
        config = RegistrationConfig.from_yaml(args.config)
    else:
        config = RegistrationConfig()
    config = apply_overrides(config, args)

    if args.rigid and not config.do_rigid:
        parser.error("rigid transformation output requested when no rigid registration is requested")
    if (args.affine or args.affine_1tomidway or args.affine_2tomidway) and not config.do_affine:
        parser.error("affine transformation output requested when no affine registration is requested")
    if args.syn_warp and not config.do_syn:
        parser.error("SyN warp output requested when no SyN registration is requested")

    image1, meta1 = load_volume(args.image1)
    image2, meta2 = load_volume(args.image2)
    mask1 = load_mask(args.mask1, image1.shape)[0] if args.mask1 else None
    mask2 = load_mask(args.mask2, image2.shape)[0] if args.mask2 else None

    if config.verbose:
        print(f"image1: {args.image1} {image1.shape}, spacing {meta1['spacing']}")
        print(f"image2: {args.image2} {image2.shape}, spacing {meta2['spacing']}")

    try:
        result = MRReg(config).register(image1, image2, meta1['affine'], meta2['affine'], mask1, mask2)
    except RegistrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.transformed:
        save_volume(args.transformed, result['transformed'], meta2)
    if args.transformed_midway:
        midway_meta = {'affine': result['midway_affine']}
        save_volume(args.transformed_midway[0], result['transformed_midway'][0], midway_meta)
        save_volume(args.transformed_midway[1], result['transformed_midway'][1], midway_meta)
    if args.rigid:
        save_transform(args.rigid, result['rigid'].transform)
    if args.affine:
        save_transform(args.affine, result['affine'].transform)
    if args.affine_1tomidway:
        save_transform(args.affine_1tomidway, result['half'])
    if args.affine_2tomidway:
        save_transform(args.affine_2tomidway, result['half_inverse'])
    if args.syn_warp:
        syn = result['syn']
        save_warps(args.syn_warp, result['warps'], syn.affine, syn.transform)

    if config.verbose:
        print(f"Total time: {result['timing']['total']:.2f}s")
        for stage in ('rigid', 'affine'):
            if result[stage] is not None:
                print(f"  - {stage} final cost: {result[stage].final_cost:.6g}")
        if result['jacobian_stats'] is not None:
            stats = result['jacobian_stats']
            print(f"  - Jacobian determinant: min {stats['min']:.3f}, max {stats['max']:.3f}, "
                  f"folding {stats['percent_folding']:.2f}%")

    return 0


if __name__ == '__main__':
    sys.exit(main())
