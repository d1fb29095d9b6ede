modelName = 'codes_iter1_cv'

args = {}
args['outputDir'] = 'logs/' + modelName
args['adapt_model'] = 'logs/codes_iter1/adapt_iter1.nnet'
args['back_model'] = 'exp/back.nnet'
args['feature_transform'] = 'exp/final.feature_transform'
args['features'] = 'data/cv_feats.pkl'
args['alignments'] = 'data/cv_ali.pkl'
args['set2utt'] = 'data/cv/spk2utt'
args['codes'] = 'logs/codes_iter1/code_iter1.pkl'

# Forward only: no shuffling, no updates, nothing written besides stats
args['crossvalidate'] = True
args['randomize'] = False
args['shuffle'] = False
args['bunch_size'] = 512
args['cache_size'] = 32768

args['device'] = 'auto'
args['wandb_mode'] = 'online'

from code_adapt.code_trainer import trainCodes

stats = trainCodes(args)
print(f"cv frames: {stats.total_frames}, skipped: {stats.missing_alignment + stats.num_other_error}")
