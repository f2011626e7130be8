"""
Single-nucleus RNA-seq analysis of astrocytes in Alzheimer's Disease
QC, clustering, annotation, sub-clustering and differential expression
"""
