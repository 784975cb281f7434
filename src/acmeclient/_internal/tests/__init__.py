"""acmeclient tests"""
